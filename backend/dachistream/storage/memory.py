"""In-process `Storage` implementation.

Holds a single settings row, user profiles, user insights and a bounded chat
history. Suitable for a single streamer session and for tests.
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

from .base import ChatMessage, Storage, StreamSettings, UserInsight, UserProfile, utcnow


class InMemoryStorage(Storage):
    """Dict/deque backed storage with the same read contract as a database."""

    def __init__(self, settings: Optional[StreamSettings] = None, history_limit: int = 500) -> None:
        self._settings: List[StreamSettings] = [settings] if settings is not None else []
        self._profiles: Dict[str, UserProfile] = {}
        self._insights: Dict[str, UserInsight] = {}
        self._history: Deque[ChatMessage] = deque(maxlen=max(1, int(history_limit)))

    # --- Storage contract -----------------------------------------------------
    async def get_settings(self) -> List[StreamSettings]:
        return list(self._settings)

    async def get_all_user_profiles(self) -> List[UserProfile]:
        return list(self._profiles.values())

    async def get_all_user_insights(self) -> List[UserInsight]:
        return list(self._insights.values())

    async def get_user_insight(self, user_id: str) -> Optional[UserInsight]:
        return self._insights.get(user_id)

    async def get_chat_messages(self, limit: int = 100) -> List[ChatMessage]:
        if limit <= 0:
            return []
        newest_first = list(reversed(self._history))
        return newest_first[:limit]

    # --- Writes used by host adapters ---------------------------------------
    def add_chat_message(
        self,
        user_id: Optional[str],
        username: str,
        message: str,
        channel: str,
        message_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        **profile_flags: Any,
    ) -> ChatMessage:
        """Record a chat line and update the author's profile and message total."""
        now = timestamp or utcnow()
        chat = ChatMessage(
            id=message_id or str(uuid.uuid4()),
            user_id=user_id,
            username=username,
            message=message,
            channel=channel,
            timestamp=now,
        )
        self._history.append(chat)

        if user_id:
            profile = self._profiles.get(user_id)
            if profile is None:
                profile = UserProfile(user_id=user_id, username=username, first_seen=now, last_seen=now)
            profile = replace(profile, username=username, last_seen=now, **profile_flags)
            self._profiles[user_id] = profile

            insight = self._insights.get(user_id) or UserInsight(user_id=user_id)
            self._insights[user_id] = replace(insight, total_messages=insight.total_messages + 1)

        return chat

    def update_settings(self, **changes: Any) -> StreamSettings:
        """Apply partial changes to the settings row, creating it if missing."""
        current = self._settings[0] if self._settings else StreamSettings()
        updated = current.replace(**changes)
        if self._settings:
            self._settings[0] = updated
        else:
            self._settings.append(updated)
        logger.info(f"Settings updated: {sorted(changes)}")
        return updated

    def upsert_user_insight(self, insight: UserInsight) -> None:
        self._insights[insight.user_id] = insight

    def clear_settings(self) -> None:
        self._settings.clear()
