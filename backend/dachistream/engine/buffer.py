"""Cycle-scoped chat message buffer.

Messages accumulate in insertion order together with a per-user tally for the
current cycle. The scheduler clears the whole buffer at the end of each
cycle; that is the only way entries leave it unless an overflow cap is
configured.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Deque, Dict, List, Mapping, Optional, Tuple

from ..storage.base import ChatMessage


class OverflowPolicy(str, Enum):
    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"


@dataclass(frozen=True)
class BufferSnapshot:
    """Read-only copy of the buffer taken under its lock."""

    messages: Tuple[ChatMessage, ...]
    user_message_counts: Mapping[str, int]


class MessageBuffer:
    """Append-only message collection with per-user counts.

    - `add()` is O(1) and never blocks on I/O.
    - `snapshot()` and `clear()` are indivisible with respect to `add()`.
    - `max_size=None` (default) leaves the buffer unbounded; with a cap the
      overflow policy either evicts the oldest message or rejects the new one.

    Invariant: `sum(user_message_counts) == number of messages with a user_id`.
    """

    def __init__(
        self,
        max_size: Optional[int] = None,
        overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
    ) -> None:
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be positive or None")
        self.max_size = max_size
        self.overflow_policy = OverflowPolicy(overflow_policy)
        self._messages: Deque[ChatMessage] = deque()
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def add(self, message: ChatMessage) -> bool:
        """Append a message. Returns False only when a full buffer rejects it."""
        with self._lock:
            if self.max_size is not None and len(self._messages) >= self.max_size:
                if self.overflow_policy is OverflowPolicy.DROP_NEWEST:
                    return False
                self._forget(self._messages.popleft())
            self._messages.append(message)
            if message.user_id:
                self._counts[message.user_id] = self._counts.get(message.user_id, 0) + 1
        return True

    def _forget(self, evicted: ChatMessage) -> None:
        # caller holds the lock
        if not evicted.user_id:
            return
        remaining = self._counts.get(evicted.user_id, 0) - 1
        if remaining > 0:
            self._counts[evicted.user_id] = remaining
        else:
            self._counts.pop(evicted.user_id, None)

    def snapshot(self) -> BufferSnapshot:
        with self._lock:
            return BufferSnapshot(
                messages=tuple(self._messages),
                user_message_counts=MappingProxyType(dict(self._counts)),
            )

    def messages(self) -> List[ChatMessage]:
        with self._lock:
            return list(self._messages)

    def clear(self) -> int:
        """Empty messages and counts together. Returns how many messages were dropped."""
        with self._lock:
            dropped = len(self._messages)
            self._messages.clear()
            self._counts.clear()
        return dropped

    @property
    def user_count(self) -> int:
        with self._lock:
            return len(self._counts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
