import asyncio
import itertools
from typing import Optional

from dachistream.engine.scheduler import DachiStreamService
from dachistream.storage.base import ChatMessage


_ids = itertools.count(1)


def make_message(user_id: Optional[str], username: Optional[str] = None, text: Optional[str] = None) -> ChatMessage:
    n = next(_ids)
    return ChatMessage(
        id=f"msg-{n}",
        user_id=user_id,
        username=username or (user_id or "anon"),
        message=text or f"message {n}",
        channel="dachi",
    )


class ManualTicker:
    """Stand-in for asyncio.sleep: the timer only advances when tick() is called."""

    def __init__(self):
        self.delays = []
        self._ticks = asyncio.Queue()

    async def sleep(self, delay):
        self.delays.append(delay)
        await self._ticks.get()

    def tick(self):
        self._ticks.put_nowait(None)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def advance(service: DachiStreamService, ticker: ManualTicker) -> None:
    """Fire one timer tick and wait for the cycles it spawned."""
    ticker.tick()
    await settle()
    await service.wait_cycles()
