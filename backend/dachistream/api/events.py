"""Monitor event bus for server → dashboard WebSocket broadcast.

The DachiStream service notifies synchronously (state observer, log
listener); the bus schedules the async fan-out on the running event loop.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket
from loguru import logger

from ..core.state import DachiStreamLog, DachiStreamState


def make_event(type_: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "v": 1,
        "type": type_,
        "data": data or {},
        "ts": int(time.time() * 1000),
        "id": str(uuid.uuid4()),
    }


class MonitorEventBus:
    """In-memory fan-out of state and log events to monitor clients."""

    def __init__(self) -> None:
        self.clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    async def broadcast(self, type_: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Send an event to all clients. Stale sockets are removed."""
        evt = make_event(type_, data)
        async with self._lock:
            stale: list[WebSocket] = []
            for ws in list(self.clients):
                try:
                    await ws.send_json(evt)
                except Exception as exc:  # pragma: no cover - network failure is best-effort
                    logger.warning(f"Monitor client send failed: {exc}")
                    stale.append(ws)
            for ws in stale:
                self.clients.discard(ws)

    def _schedule(self, type_: str, data: Dict[str, Any]) -> None:
        if not self.clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.broadcast(type_, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def on_state_change(self, state: DachiStreamState) -> None:
        """`on_status_change` observer for DachiStreamService."""
        self._schedule("state", state.to_dict())

    def on_log(self, entry: DachiStreamLog) -> None:
        """Log listener for DachiStreamService.logs."""
        self._schedule("log", entry.to_dict())
