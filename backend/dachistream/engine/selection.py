"""Selection policies: pick at most one buffered message per cycle."""

from __future__ import annotations

import math
import random
from typing import Mapping, Optional, Union

from loguru import logger

from ..storage.base import ChatMessage, SelectionStrategy
from .buffer import BufferSnapshot


def select_message(
    strategy: Union[SelectionStrategy, str],
    snapshot: BufferSnapshot,
    insight_totals: Optional[Mapping[str, int]] = None,
    rng: Optional[random.Random] = None,
) -> Optional[ChatMessage]:
    """Return the message `strategy` picks from `snapshot`, or None if it is empty.

    `insight_totals` maps user id -> all-time message count and is only read
    by `new_chatter`. Unknown strategies fall back to the last buffered
    message instead of raising.
    """
    messages = snapshot.messages
    if not messages:
        return None

    try:
        chosen = SelectionStrategy(strategy)
    except ValueError:
        logger.warning(f"Unknown selection strategy {strategy!r}; using last message")
        return messages[-1]

    if chosen is SelectionStrategy.MOST_ACTIVE:
        return _most_active(snapshot)
    if chosen is SelectionStrategy.RANDOM:
        return (rng or random).choice(messages)
    return _new_chatter(snapshot, insight_totals or {})


def _most_active(snapshot: BufferSnapshot) -> ChatMessage:
    max_count = 0
    top_user: Optional[str] = None
    # dict preserves first-insertion order, so the first user to reach the max wins
    for user_id, count in snapshot.user_message_counts.items():
        if count > max_count:
            max_count = count
            top_user = user_id

    if top_user is not None:
        for message in reversed(snapshot.messages):
            if message.user_id == top_user:
                return message

    return snapshot.messages[-1]


def _new_chatter(snapshot: BufferSnapshot, totals: Mapping[str, int]) -> ChatMessage:
    selected = snapshot.messages[0]
    lowest = math.inf
    for message in snapshot.messages:
        if not message.user_id:
            continue
        count = totals.get(message.user_id, 0)
        if count < lowest:
            lowest = count
            selected = message
    return selected
