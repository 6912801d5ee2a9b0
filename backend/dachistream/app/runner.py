"""Application runner: wires storage, the DachiStream service, API and integrations."""

from __future__ import annotations

import asyncio
import contextlib
from typing import List, Optional

from loguru import logger

from ..api.events import MonitorEventBus
from ..api.server import create_api
from ..config.settings import AppConfig
from ..engine.scheduler import DachiStreamService
from ..integrations.base import BaseIntegration
from ..services.llm import ReplyGenerator
from ..storage.memory import InMemoryStorage
from .responder import Responder


class AppRunner:
    """Coordinates settings, API, chat integration and the scheduler lifecycle."""

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self.config = config or AppConfig.load()
        engine = self.config.engine

        self.storage = InMemoryStorage(settings=self.config.stream, history_limit=engine.history_limit)
        self.service = DachiStreamService(
            self.storage,
            max_buffer_size=engine.max_buffer_size,
            overflow_policy=engine.overflow_policy,
            skip_overlapping_cycles=engine.skip_overlapping_cycles,
            callback_timeout=engine.callback_timeout_secs,
        )
        self.bus = MonitorEventBus()
        self.service.logs.add_listener(self.bus.on_log)

        self.api = create_api(self.config, self.service, self.bus)

        # Integrations (Twitch chat → buffer)
        from ..integrations.twitch_chat import TwitchChatIntegration

        self.twitch = TwitchChatIntegration(self.config, self.storage, self.service)
        self.integrations: List[BaseIntegration] = [self.twitch]

        generator = None
        if self.config.openrouter_api_key:
            generator = ReplyGenerator(
                api_key=self.config.openrouter_api_key,
                system_prompt=self.config.system_prompt,
                http_referer=self.config.http_referer,
            )
        self.responder = Responder(self.storage, self.service, generator, send_chat=self.twitch.send_chat_message)

    async def run(self) -> None:
        """Run FastAPI (Uvicorn) and the DachiStream cycle until cancelled."""
        import uvicorn  # local import to avoid hard dependency at import time

        server = uvicorn.Server(
            uvicorn.Config(self.api, host=self.config.host, port=self.config.port, log_level="info")
        )

        await self.service.start(self.responder, self.bus.on_state_change)
        server_task = asyncio.create_task(server.serve())

        for integ in self.integrations:
            try:
                await integ.on_app_ready(self.api)
                await integ.on_service_ready(self.service)
            except Exception as exc:  # pragma: no cover - resiliency
                logger.warning(f"Integration startup failed: {exc}")

        try:
            await server_task
        finally:
            self.service.stop()
            for integ in self.integrations:
                with contextlib.suppress(Exception):
                    await integ.on_shutdown()
            await self.service.wait_cycles()
