"""FastAPI app setup and dependency wiring."""

from __future__ import annotations

from fastapi import FastAPI, WebSocket
from loguru import logger

from ..config.settings import AppConfig
from ..engine.scheduler import DachiStreamService
from .events import MonitorEventBus
from .routes import build_router
from .websocket import handle_monitor_ws


def create_api(config: AppConfig, service: DachiStreamService, bus: MonitorEventBus) -> FastAPI:
    """Create FastAPI app with routes and WebSocket endpoint."""
    api = FastAPI()

    api.include_router(build_router(config, service, bus))

    @api.websocket("/ws/dachistream")
    async def ws_dachistream(ws: WebSocket):  # noqa: D401
        await handle_monitor_ws(ws, bus, service)

    logger.info("API created")
    return api
