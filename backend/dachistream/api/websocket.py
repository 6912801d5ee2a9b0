"""WebSocket endpoint handlers and helpers."""

from __future__ import annotations

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from ..engine.scheduler import DachiStreamService
from .events import MonitorEventBus, make_event


async def handle_monitor_ws(ws: WebSocket, bus: MonitorEventBus, service: DachiStreamService) -> None:
    """Accept a monitor WS, send a hello snapshot, and keep the socket alive."""
    await ws.accept()
    bus.clients.add(ws)
    logger.info("Monitor connected")
    try:
        await ws.send_json(make_event("hello", service.get_state().to_dict()))
        while True:
            _ = await ws.receive_json()
    except WebSocketDisconnect:
        logger.info("Monitor disconnected")
    except Exception as exc:  # pragma: no cover
        logger.exception(f"WS error: {exc}")
    finally:
        bus.clients.discard(ws)
