"""DachiStream status model and in-memory log sink.

The scheduler keeps its live fields itself and materializes a
`DachiStreamState` on demand. `StatusLog` is the bounded ring buffer of typed
log entries exposed to the monitoring UI; each entry is mirrored to Loguru
and handed to registered listeners (e.g. the WebSocket broadcaster).
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from loguru import logger

from ..storage.base import ChatMessage, utcnow
from .logging import register_levels


MAX_LOGS = 100


class DachiStreamStatus(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    PROCESSING = "processing"
    SELECTING_MESSAGE = "selecting_message"
    BUILDING_CONTEXT = "building_context"
    WAITING_FOR_AI = "waiting_for_ai"
    DISABLED = "disabled"
    PAUSED = "paused"


class LogType(str, Enum):
    INFO = "info"
    STATUS = "status"
    MESSAGE = "message"
    SELECTION = "selection"
    AI_RESPONSE = "ai_response"
    ERROR = "error"


# Loguru level each log type is mirrored at
_LOGURU_LEVELS = {
    LogType.INFO: "INFO",
    LogType.STATUS: "CYCLE",
    LogType.MESSAGE: "BUFFER",
    LogType.SELECTION: "SELECT",
    LogType.AI_RESPONSE: "REPLY",
    LogType.ERROR: "ERROR",
}


@dataclass(frozen=True)
class DachiStreamLog:
    type: LogType
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "message": self.message,
            "data": self.data,
        }


@dataclass(frozen=True)
class DachiStreamState:
    status: DachiStreamStatus
    buffer_count: int
    last_cycle_time: Optional[datetime]
    next_cycle_time: Optional[datetime]
    seconds_until_next_cycle: int
    selected_message: Optional[ChatMessage] = None
    ai_response: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "bufferCount": self.buffer_count,
            "lastCycleTime": self.last_cycle_time.isoformat() if self.last_cycle_time else None,
            "nextCycleTime": self.next_cycle_time.isoformat() if self.next_cycle_time else None,
            "secondsUntilNextCycle": self.seconds_until_next_cycle,
            "selectedMessage": self.selected_message.to_dict() if self.selected_message else None,
            "aiResponse": self.ai_response,
            "error": self.error,
        }


LogListener = Callable[[DachiStreamLog], None]


class StatusLog:
    """Ring buffer of the most recent log entries with change notifications."""

    def __init__(self, max_logs: int = MAX_LOGS) -> None:
        register_levels()
        self._entries: Deque[DachiStreamLog] = deque(maxlen=max_logs)
        self._listeners: List[LogListener] = []

    def add_listener(self, listener: LogListener) -> None:
        """Register a listener called with every new entry."""
        self._listeners.append(listener)

    def add(self, type_: LogType, message: str, data: Optional[Dict[str, Any]] = None) -> DachiStreamLog:
        entry = DachiStreamLog(type=LogType(type_), message=message, data=data)
        self._entries.append(entry)
        logger.log(_LOGURU_LEVELS[entry.type], message)
        self._notify(entry)
        return entry

    def _notify(self, entry: DachiStreamLog) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as exc:  # pragma: no cover
                logger.warning(f"Log listener error: {exc}")

    def entries(self) -> List[DachiStreamLog]:
        """Copy of the retained entries, oldest first."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
