"""The `on_message_selected` callback the host hands to DachiStreamService.

Generates a reply for the selected message, reports it back to the service
for the log/state feed and optionally echoes it into Twitch chat.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from loguru import logger

from ..engine.scheduler import DachiStreamService
from ..services.llm import ReplyGenerator
from ..storage.base import ChatMessage, Storage

SendChat = Callable[[str], Awaitable[bool]]


class Responder:
    def __init__(
        self,
        storage: Storage,
        service: DachiStreamService,
        generator: Optional[ReplyGenerator],
        send_chat: Optional[SendChat] = None,
    ) -> None:
        self.storage = storage
        self.service = service
        self.generator = generator
        self.send_chat = send_chat

    async def __call__(self, message: ChatMessage, context: str) -> None:
        if self.generator is None:
            logger.warning("No reply generator configured (OPENROUTER_API_KEY unset); skipping reply")
            return

        rows = await self.storage.get_settings()
        settings = rows[0] if rows else None
        if settings is None or not settings.dachipool_enabled:
            return

        try:
            reply = await self.generator.generate(message, context, settings)
        except Exception as exc:
            logger.error(f"Reply generation failed for {message.username}: {exc}")
            return
        if not reply:
            logger.info(f"No reply generated for {message.username}")
            return

        self.service.log_ai_response(reply)

        if settings.dachiastream_auto_send_to_chat and self.send_chat is not None:
            sent = await self.send_chat(reply)
            if sent:
                logger.log("REPLY", "AI response sent to Twitch chat")
            else:
                logger.warning("Failed to send AI response to Twitch chat")
