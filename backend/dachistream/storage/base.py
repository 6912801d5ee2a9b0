"""Storage capability consumed by the DachiStream engine.

The engine never talks to a database directly. Hosts hand it an object
implementing `Storage`; the records it returns are the immutable dataclasses
defined here.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SelectionStrategy(str, Enum):
    """Named policies for picking one buffered message per cycle."""

    MOST_ACTIVE = "most_active"
    RANDOM = "random"
    NEW_CHATTER = "new_chatter"


@dataclass(frozen=True)
class ChatMessage:
    """A chat line as delivered by the transport. Never mutated by the engine."""

    id: str
    user_id: Optional[str]
    username: str
    message: str
    channel: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "username": self.username,
            "message": self.message,
            "channel": self.channel,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    username: str
    is_vip: bool = False
    is_mod: bool = False
    is_subscriber: bool = False
    first_seen: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class UserInsight:
    """Slowly-updated personality summary and all-time message count for a user."""

    user_id: str
    summary: Optional[str] = None
    total_messages: int = 0
    last_updated: datetime = field(default_factory=utcnow)
    recent_tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StreamSettings:
    """Operator settings row. Fetched fresh by the scheduler every cycle."""

    dachipool_enabled: bool = True
    dachiastream_selection_strategy: str = SelectionStrategy.MOST_ACTIVE.value
    dachiastream_cycle_interval: Optional[int] = 15
    dachiastream_paused: bool = False
    dachiastream_auto_send_to_chat: bool = False
    streamer_voice_only_mode: bool = False
    topic_allowlist: Tuple[str, ...] = ()
    topic_blocklist: Tuple[str, ...] = ()
    use_database_personalization: bool = True

    # Reply generation knobs, read by the responder only
    dachipool_ai_model: str = "meta-llama/llama-3.3-70b-instruct"
    dachipool_ai_temp: int = 7
    dachipool_max_chars: int = 1000
    dachipool_energy: str = "Balanced"
    ai_personality: str = "Casual"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StreamSettings":
        """Build from a loose mapping (YAML section, request body). Unknown keys are ignored."""
        known = {f.name for f in dataclasses.fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in known:
                continue
            if key in ("topic_allowlist", "topic_blocklist"):
                value = tuple(str(v) for v in (value or ()))
            values[key] = value
        return cls(**values)

    def replace(self, **changes: Any) -> "StreamSettings":
        for key in ("topic_allowlist", "topic_blocklist"):
            if key in changes:
                changes[key] = tuple(changes[key] or ())
        return dataclasses.replace(self, **changes)


class Storage(ABC):
    """Abstract persistence capability used by the scheduler and context builder."""

    @abstractmethod
    async def get_settings(self) -> List[StreamSettings]:
        """All settings rows; the first one is authoritative."""

    @abstractmethod
    async def get_all_user_profiles(self) -> List[UserProfile]:
        ...

    @abstractmethod
    async def get_all_user_insights(self) -> List[UserInsight]:
        ...

    @abstractmethod
    async def get_user_insight(self, user_id: str) -> Optional[UserInsight]:
        ...

    @abstractmethod
    async def get_chat_messages(self, limit: int = 100) -> List[ChatMessage]:
        """Stored chat history, most recent first."""
