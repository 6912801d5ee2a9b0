"""Assemble the text context handed to the reply generator.

Sections are optional and joined by a blank line in a fixed order. Storage
lookups that fail only drop their own section; `build_context` never raises.
"""

from __future__ import annotations

from typing import List, Optional

from loguru import logger

from ..storage.base import ChatMessage, Storage, StreamSettings

RECENT_CHAT_LIMIT = 10

VOICE_ONLY_DIRECTIVE = "STREAMER VOICE-ONLY MODE: Only respond if the streamer has spoken recently."


async def build_context(message: ChatMessage, settings: StreamSettings, storage: Storage) -> str:
    parts: List[str] = []

    if settings.streamer_voice_only_mode:
        parts.append(VOICE_ONLY_DIRECTIVE)

    if settings.topic_allowlist:
        parts.append(f"ALLOWED TOPICS: {', '.join(settings.topic_allowlist)}")
    if settings.topic_blocklist:
        parts.append(f"BLOCKED TOPICS: Avoid discussing {', '.join(settings.topic_blocklist)}")

    if settings.use_database_personalization and message.user_id:
        personality = await _personality_section(message, storage)
        if personality:
            parts.append(personality)

    recent = await _recent_chat_section(storage)
    if recent:
        parts.append(recent)

    return "\n\n".join(parts)


async def _personality_section(message: ChatMessage, storage: Storage) -> Optional[str]:
    try:
        insight = await storage.get_user_insight(message.user_id)
    except Exception as exc:
        logger.warning(f"User insight lookup failed for {message.username}: {exc}")
        return None
    if insight is None or not insight.summary:
        return None
    return f"USER PERSONALITY ({message.username}): {insight.summary}"


async def _recent_chat_section(storage: Storage) -> Optional[str]:
    try:
        recent = await storage.get_chat_messages(RECENT_CHAT_LIMIT)
    except Exception as exc:
        logger.warning(f"Recent chat lookup failed: {exc}")
        return None
    if not recent:
        return None
    # storage returns newest first; render oldest first
    lines = [f"{m.username}: {m.message}" for m in reversed(list(recent)[:RECENT_CHAT_LIMIT])]
    return "RECENT CHAT:\n" + "\n".join(lines)
