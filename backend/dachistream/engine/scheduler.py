"""DachiStreamService: timer-driven buffer drain and message selection.

Chat transports push messages with `add_message()`. Every
`cycle_interval` seconds a cycle runs: it reads a fresh settings snapshot,
picks one buffered message with the configured strategy, builds the text
context, awaits the host's `on_message_selected(message, context)` callback
and finally clears the buffer. Each step is visible through `get_state()`,
`get_logs()` and the optional `on_status_change` observer.

Notes:
- Cycles may overlap: each tick spawns its own task, so a slow callback does
  not delay the next tick. Pass `skip_overlapping_cycles=True` to drop ticks
  while a cycle is still in flight.
- Paused cycles leave the buffer alone; ingestion keeps accumulating.
- Nothing raised by storage, selection, context building or the callback
  escapes a cycle. Failures are logged as `error` entries and the buffer is
  still cleared.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import random
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from loguru import logger

from ..core.state import (
    MAX_LOGS,
    DachiStreamLog,
    DachiStreamState,
    DachiStreamStatus,
    LogType,
    StatusLog,
)
from ..storage.base import ChatMessage, SelectionStrategy, Storage, StreamSettings, utcnow
from .buffer import MessageBuffer, OverflowPolicy
from .context import build_context
from .selection import select_message


MIN_CYCLE_INTERVAL = 5
MAX_CYCLE_INTERVAL = 60
DEFAULT_CYCLE_INTERVAL = 15
AI_SUMMARY_CHARS = 100

MessageSelectedCallback = Callable[[ChatMessage, str], Awaitable[None]]
StatusChangeCallback = Callable[[DachiStreamState], None]
SleepFn = Callable[[float], Awaitable[Any]]


def is_valid_cycle_interval(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return MIN_CYCLE_INTERVAL <= value <= MAX_CYCLE_INTERVAL


class DachiStreamService:
    """Cyclic message buffer with pluggable selection and an observable state machine."""

    def __init__(
        self,
        storage: Storage,
        *,
        max_buffer_size: Optional[int] = None,
        overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        skip_overlapping_cycles: bool = False,
        callback_timeout: Optional[float] = None,
        max_logs: int = MAX_LOGS,
        rng: Optional[random.Random] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.buffer = MessageBuffer(max_size=max_buffer_size, overflow_policy=overflow_policy)
        self.logs = StatusLog(max_logs=max_logs)
        self.skip_overlapping_cycles = bool(skip_overlapping_cycles)
        self.callback_timeout = callback_timeout
        self._rng = rng
        self._sleep = sleep

        self._cycle_interval = DEFAULT_CYCLE_INTERVAL
        self._status = DachiStreamStatus.IDLE
        self._paused = False
        self._last_cycle_time = None
        self._selected_message: Optional[ChatMessage] = None
        self._ai_response: Optional[str] = None
        self._error: Optional[str] = None

        self._on_message_selected: Optional[MessageSelectedCallback] = None
        self._on_status_change: Optional[StatusChangeCallback] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    # --- Properties ------------------------------------------------------------
    @property
    def cycle_interval(self) -> int:
        return self._cycle_interval

    @property
    def status(self) -> DachiStreamStatus:
        return self._status

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    # --- Lifecycle -------------------------------------------------------------
    async def start(
        self,
        on_message_selected: MessageSelectedCallback,
        on_status_change: Optional[StatusChangeCallback] = None,
    ) -> None:
        """Read the initial interval from settings and begin the cycle timer."""
        if self.is_running:
            logger.warning("DachiStream service already running; start() ignored")
            return

        self._on_message_selected = on_message_selected
        self._on_status_change = on_status_change

        settings: Optional[StreamSettings] = None
        try:
            settings = await self._load_settings()
        except Exception as exc:
            logger.warning(f"Could not read settings at startup, using defaults: {exc}")

        configured = settings.dachiastream_cycle_interval if settings else None
        if configured is not None:
            if is_valid_cycle_interval(configured):
                self._cycle_interval = configured
            else:
                logger.warning(
                    f"Configured cycle interval {configured!r} outside "
                    f"{MIN_CYCLE_INTERVAL}-{MAX_CYCLE_INTERVAL}s; using {self._cycle_interval}s"
                )
        if settings is not None and settings.dachiastream_paused:
            self._paused = True

        self._timer_task = asyncio.create_task(self._timer_loop(self._cycle_interval))
        self.add_log(LogType.INFO, f"DachiStream service started ({self._cycle_interval}-second cycle)")
        if self._paused:
            self.add_log(LogType.STATUS, "DachiStream started paused")
            self._set_status(DachiStreamStatus.PAUSED)
        else:
            self._set_status(DachiStreamStatus.COLLECTING)

    def stop(self) -> None:
        """Cancel the timer; no tick fires afterwards. The buffer is left as is."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        self.add_log(LogType.INFO, "DachiStream service stopped")
        self._set_status(DachiStreamStatus.IDLE)

    def pause(self) -> None:
        self._paused = True
        self.add_log(LogType.STATUS, "DachiStream paused")
        self._set_status(DachiStreamStatus.PAUSED)

    def resume(self) -> None:
        self._paused = False
        self.add_log(LogType.STATUS, "DachiStream resumed")
        self._set_status(DachiStreamStatus.COLLECTING)

    def update_cycle_interval(self, seconds: int) -> bool:
        """Change the cycle period. Values outside 5-60 are rejected and logged."""
        if not is_valid_cycle_interval(seconds):
            logger.warning(
                f"Cycle interval must be between {MIN_CYCLE_INTERVAL} and {MAX_CYCLE_INTERVAL} seconds (got {seconds!r})"
            )
            self.add_log(
                LogType.INFO,
                f"Rejected cycle interval {seconds!r} - keeping {self._cycle_interval} seconds",
            )
            return False

        self._cycle_interval = seconds
        if self.is_running:
            self._timer_task.cancel()
            self._timer_task = asyncio.create_task(self._timer_loop(seconds))
        self.add_log(LogType.INFO, f"Cycle interval updated to {seconds} seconds")
        self._broadcast_state()
        return True

    async def wait_cycles(self) -> None:
        """Wait until every in-flight cycle has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _timer_loop(self, interval: int) -> None:
        while True:
            await self._sleep(interval)
            self._spawn_cycle()

    def _spawn_cycle(self) -> None:
        if self.skip_overlapping_cycles and self._inflight:
            self.add_log(LogType.INFO, "Cycle skipped - previous cycle still in progress")
            return
        task = asyncio.create_task(self.run_cycle())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    # --- Ingestion ---------------------------------------------------------------
    def add_message(self, message: ChatMessage) -> bool:
        """Buffer a chat message for the current cycle. Never awaits."""
        accepted = self.buffer.add(message)
        if accepted:
            self.add_log(
                LogType.MESSAGE,
                f"Message added to buffer from {message.username}",
                {"message": message.message, "bufferSize": len(self.buffer)},
            )
        else:
            self.add_log(
                LogType.MESSAGE,
                f"Buffer full - dropped message from {message.username}",
                {"message": message.message, "bufferSize": len(self.buffer)},
            )
        self._broadcast_state()
        return accepted

    # --- Cycle -------------------------------------------------------------------
    async def run_cycle(self) -> None:
        """Run one processing cycle (what each timer tick does)."""
        self._last_cycle_time = utcnow()
        self.add_log(LogType.INFO, f"Processing cycle started - {len(self.buffer)} messages in buffer")

        if self._paused:
            self.add_log(LogType.STATUS, "Cycle skipped - service is paused")
            self._set_status(DachiStreamStatus.PAUSED)
            return

        if len(self.buffer) == 0:
            self.add_log(LogType.INFO, "Cycle skipped - no messages in buffer")
            self._set_status(DachiStreamStatus.COLLECTING)
            return

        try:
            settings = await self._load_settings()
        except Exception as exc:
            self._record_error(exc)
            self._finish_cycle()
            return

        if settings is None or not settings.dachipool_enabled:
            self.add_log(LogType.STATUS, "DachiPool is disabled - clearing buffer")
            self.buffer.clear()
            self._set_status(DachiStreamStatus.DISABLED)
            return

        try:
            await self._dispatch(settings)
        except Exception as exc:
            self._record_error(exc)
        finally:
            self._finish_cycle()

    async def _dispatch(self, settings: StreamSettings) -> None:
        self._error = None
        self._set_status(DachiStreamStatus.PROCESSING)
        self._set_status(DachiStreamStatus.SELECTING_MESSAGE)

        strategy = settings.dachiastream_selection_strategy
        strategy_name = getattr(strategy, "value", strategy)
        self.add_log(LogType.INFO, f"Using selection strategy: {strategy_name}")

        snapshot = self.buffer.snapshot()
        totals = None
        if strategy_name == SelectionStrategy.NEW_CHATTER.value:
            totals = await self._insight_totals()
        selected = select_message(strategy, snapshot, totals, self._rng)

        if selected is None:
            self.add_log(LogType.INFO, "No message selected from buffer")
            return

        self._selected_message = selected
        self._ai_response = None
        self.add_log(
            LogType.SELECTION,
            f'Selected message from {selected.username}: "{selected.message}"',
            {"username": selected.username, "message": selected.message, "strategy": strategy_name},
        )

        self._set_status(DachiStreamStatus.BUILDING_CONTEXT)
        context = await build_context(selected, settings, self.storage)
        self.add_log(LogType.INFO, "AI context built successfully", {"length": len(context)})

        self._set_status(DachiStreamStatus.WAITING_FOR_AI)
        if self._on_message_selected is not None:
            await self._invoke_callback(selected, context)

    async def _invoke_callback(self, message: ChatMessage, context: str) -> None:
        pending = self._on_message_selected(message, context)
        if not inspect.isawaitable(pending):
            return
        if self.callback_timeout:
            await asyncio.wait_for(pending, timeout=self.callback_timeout)
        else:
            await pending

    def _record_error(self, exc: BaseException) -> None:
        text = str(exc) or exc.__class__.__name__
        self._error = text
        self.add_log(LogType.ERROR, f"Error processing DachiStream buffer: {text}", {"error": repr(exc)})
        logger.opt(exception=exc).debug("DachiStream cycle traceback")

    def _finish_cycle(self) -> None:
        self.buffer.clear()
        # a cycle outliving stop() leaves the service idle
        self._set_status(DachiStreamStatus.COLLECTING if self.is_running else DachiStreamStatus.IDLE)
        self.add_log(LogType.INFO, "Buffer cleared - waiting for next cycle")

    async def _load_settings(self) -> Optional[StreamSettings]:
        rows = await self.storage.get_settings()
        return rows[0] if rows else None

    async def _insight_totals(self) -> Dict[str, int]:
        insights = await self.storage.get_all_user_insights()
        return {insight.user_id: insight.total_messages for insight in insights}

    # --- Status & logs -------------------------------------------------------------
    def add_log(self, type_: LogType, message: str, data: Optional[Dict[str, Any]] = None) -> DachiStreamLog:
        return self.logs.add(type_, message, data)

    def log_ai_response(self, response: str) -> None:
        """Record the reply generated for the selected message."""
        summary = response[:AI_SUMMARY_CHARS]
        if len(response) > AI_SUMMARY_CHARS:
            summary += "..."
        self._ai_response = response
        self.add_log(
            LogType.AI_RESPONSE,
            f"AI Response generated: {summary}",
            {"fullResponse": response, "length": len(response)},
        )
        self._broadcast_state()

    def _set_status(self, status: DachiStreamStatus) -> None:
        self._status = status
        self._broadcast_state()

    def _broadcast_state(self) -> None:
        if self._on_status_change is None:
            return
        try:
            self._on_status_change(self.get_state())
        except Exception as exc:
            logger.warning(f"Status observer error: {exc}")

    def get_state(self) -> DachiStreamState:
        interval = self._cycle_interval
        if self._last_cycle_time is None:
            next_cycle = None
            seconds_left = interval
        else:
            next_cycle = self._last_cycle_time + timedelta(seconds=interval)
            seconds_left = max(0, math.floor((next_cycle - utcnow()).total_seconds()))

        return DachiStreamState(
            status=self._status,
            buffer_count=len(self.buffer),
            last_cycle_time=self._last_cycle_time,
            next_cycle_time=next_cycle,
            seconds_until_next_cycle=seconds_left,
            selected_message=self._selected_message,
            ai_response=self._ai_response,
            error=self._error,
        )

    def get_logs(self) -> List[DachiStreamLog]:
        return self.logs.entries()

    def get_buffer_messages(self) -> List[ChatMessage]:
        return self.buffer.messages()

    def get_buffer_status(self) -> Dict[str, Any]:
        return {
            "messageCount": len(self.buffer),
            "userCount": self.buffer.user_count,
            "isPaused": self._paused,
        }
