"""Twitch chat → DachiStream buffer integration.

- Subscribes to Twitch chat via EventSub (TwitchIO v3).
- Persists every chat line (history, profile, message totals) and pushes it
  into the DachiStream buffer with `service.add_message()`.
- Offers `send_chat_message()` so the responder can echo replies to chat.

The service is handed in explicitly; the integration never reaches for a
module-level instance.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

from loguru import logger
import httpx

import twitchio
from twitchio import authentication, eventsub
from twitchio.ext import commands

from ..config.settings import AppConfig
from ..engine.scheduler import DachiStreamService
from ..storage.memory import InMemoryStorage
from .base import BaseIntegration


class TwitchChatIntegration(BaseIntegration):
    """Listens to Twitch chat and feeds the DachiStream buffer."""

    def __init__(self, config: AppConfig, storage: InMemoryStorage, service: DachiStreamService) -> None:
        self.config = config
        self.storage = storage
        self.service = service
        self.channel_login = config.twitch_channel
        self._bot: Optional[_Bot] = None
        self._bot_task: Optional[asyncio.Task] = None

    async def on_service_ready(self, service: DachiStreamService) -> None:
        """Start the bot once the scheduler is running."""
        if not self.channel_login or not self.config.twitch_client_id:
            logger.warning("TWITCH_CHANNEL / TWITCH_CLIENT_ID not set; Twitch chat integration disabled")
            return
        self._bot_task = asyncio.create_task(self._run_bot())

    async def on_shutdown(self) -> None:
        if self._bot is not None:
            try:
                await self._bot.close()
            except Exception as exc:
                logger.warning(f"Twitch bot close failed: {exc}")
        if self._bot_task is not None:
            self._bot_task.cancel()

    async def _run_bot(self) -> None:
        """Start the TwitchIO bot in a managed context."""
        self._bot = _Bot(
            integration=self,
            client_id=self.config.twitch_client_id,
            client_secret=self.config.twitch_client_secret,
            bot_id=self.config.twitch_bot_id,
            owner_id=self.config.twitch_owner_id,
            prefix="!",
        )
        try:
            async with self._bot as bot:
                await bot.start()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Twitch bot stopped: {exc}")

    def on_chat(
        self,
        user_id: Optional[str],
        username: str,
        text: str,
        channel: str,
        message_id: Optional[str] = None,
        **profile_flags: Any,
    ) -> None:
        """Persist a chat line and push it into the cycle buffer (non-blocking)."""
        chat = self.storage.add_chat_message(
            user_id=user_id or None,
            username=username,
            message=text,
            channel=channel,
            message_id=message_id,
            **profile_flags,
        )
        self.service.add_message(chat)

    async def send_chat_message(self, text: str) -> bool:
        """Send a line to the broadcaster's chat. Returns False when unavailable."""
        if self._bot is None or not self._bot.broadcaster_id:
            logger.warning("Twitch bot not ready; chat message not sent")
            return False
        return await self._bot.send_message_to_broadcaster(self._bot.broadcaster_id, text)


class _Bot(commands.Bot):
    """Slim wrapper over TwitchIO to receive chat and enable sending."""

    def __init__(self, integration: TwitchChatIntegration, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.integration = integration
        self.channel_login = integration.channel_login
        self.broadcaster_id: Optional[str] = None
        self._target_partial_user = None

    @property
    def _token_path(self) -> Path:
        return Path(self.integration.config.twitch_token_path)

    def _read_user_token(self) -> dict:
        if not self._token_path.exists():
            return {}
        try:
            return json.loads(self._token_path.read_text() or "{}")
        except Exception as exc:
            logger.warning(f"Failed to read user token file: {exc}")
            return {}

    async def setup_hook(self) -> None:
        data = self._read_user_token()
        access = (data.get("access_token") or "").strip()
        refresh = (data.get("refresh_token") or "").strip()
        if access and refresh:
            await self.add_token(access, refresh)
            logger.log("TWITCH", f"Loaded user token from {self._token_path}")
        else:
            logger.warning(f"No usable user token at {self._token_path}; chat sending may be unavailable")

        try:
            self.broadcaster_id = await self._fetch_user_id_by_login(self.channel_login, access)
            logger.log("TWITCH", f"Resolved broadcaster id for {self.channel_login}: {self.broadcaster_id}")
        except Exception as exc:
            logger.warning(f"Failed to resolve broadcaster id: {exc}")
            return

        try:
            chat = eventsub.ChatMessageSubscription(
                broadcaster_user_id=self.broadcaster_id,
                user_id=self.integration.config.twitch_bot_id,
            )
            await self.subscribe_websocket(chat)
            logger.log("TWITCH", "Subscribed to ChatMessageSubscription via websocket")
        except Exception as exc:
            logger.warning(f"Chat EventSub subscription failed: {exc}")

    async def event_ready(self) -> None:
        logger.success(f"Twitch bot logged in as: {self.user}")

    async def event_oauth_authorized(self, payload: authentication.UserTokenPayload) -> None:
        await self.add_token(payload.access_token, payload.refresh_token)

    async def event_message(self, payload: twitchio.ChatMessage) -> None:
        """Forward every chat line except the bot's own."""
        chatter = getattr(payload, "chatter", None)
        username = getattr(chatter, "name", "") or ""
        user_id = str(getattr(chatter, "id", "") or "")
        text = getattr(payload, "text", "") or ""

        bot_id = str(self.integration.config.twitch_bot_id or "")
        if bot_id and user_id == bot_id:
            return
        bot_name = (getattr(self.user, "name", "") or "").lower()
        if bot_name and username.lower() == bot_name:
            return

        channel = getattr(getattr(payload, "broadcaster", None), "name", None) or self.channel_login
        logger.log("CHAT", f"[{channel}] <{username}> {text}")
        try:
            self.integration.on_chat(
                user_id=user_id or None,
                username=username,
                text=text,
                channel=channel,
                message_id=str(getattr(payload, "id", "") or "") or None,
                is_vip=bool(getattr(chatter, "vip", False)),
                is_mod=bool(getattr(chatter, "moderator", False)),
                is_subscriber=bool(getattr(chatter, "subscriber", False)),
            )
        except Exception as exc:
            logger.warning(f"Failed to ingest chat message from {username}: {exc}")

    async def send_message_to_broadcaster(self, broadcaster_id: str, message: str) -> bool:
        try:
            if self._target_partial_user is None:
                self._target_partial_user = self.create_partialuser(broadcaster_id)
            await self._target_partial_user.send_message(sender=self.user, message=message)
            logger.success(f"[SEND] -> #{self.channel_login}: '{message}'")
            return True
        except Exception as exc:
            logger.warning(f"Failed to send message to broadcaster_id={broadcaster_id}: {exc}")
            return False

    async def _fetch_user_id_by_login(self, login: str, access: str) -> str:
        client_id = (self.integration.config.twitch_client_id or "").strip()
        if not client_id:
            raise RuntimeError("Missing TWITCH_CLIENT_ID for Helix user lookup")
        if not access:
            raise RuntimeError("No access token available to query Helix /users")

        url = "https://api.twitch.tv/helix/users"
        headers = {"Client-ID": client_id, "Authorization": f"Bearer {access}"}
        async with httpx.AsyncClient(timeout=10.0) as client:
            r = await client.get(url, headers=headers, params={"login": login})
            r.raise_for_status()
            data = r.json()
        arr = data.get("data") or []
        if not arr:
            raise RuntimeError(f"No Helix user data returned for login '{login}'")
        return str(arr[0].get("id"))
