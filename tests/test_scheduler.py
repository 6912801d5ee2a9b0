import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from dachistream.core.state import DachiStreamStatus, LogType
from dachistream.engine.buffer import OverflowPolicy
from dachistream.engine.scheduler import DachiStreamService, is_valid_cycle_interval
from dachistream.storage.base import StreamSettings, UserInsight
from dachistream.storage.memory import InMemoryStorage

from support import ManualTicker, advance, make_message, settle


def chat(storage, service, user_id, username, text):
    """Ingest a line the way the Twitch integration does."""
    message = storage.add_chat_message(user_id, username, text, "dachi")
    service.add_message(message)
    return message


def log_types(service):
    return [entry.type for entry in service.get_logs()]


@pytest.mark.parametrize("value,ok", [(4, False), (5, True), (15, True), (60, True), (61, False), (True, False), ("10", False)])
def test_interval_bounds(value, ok):
    assert is_valid_cycle_interval(value) is ok


def test_rejected_interval_keeps_previous(service):
    assert service.update_cycle_interval(4) is False
    assert service.update_cycle_interval(61) is False
    assert service.cycle_interval == 15
    assert service.get_logs()[-1].message.startswith("Rejected cycle interval 61")

    assert service.update_cycle_interval(5) is True
    assert service.update_cycle_interval(60) is True
    assert service.cycle_interval == 60


@pytest.mark.asyncio
async def test_cycle_selects_most_active_and_clears(storage, ticker):
    storage.update_settings(dachiastream_cycle_interval=5, dachiastream_selection_strategy="most_active")
    service = DachiStreamService(storage, sleep=ticker.sleep)
    callback = AsyncMock()
    await service.start(callback)
    await settle()

    chat(storage, service, "u-alice", "alice", "first")
    chat(storage, service, "u-alice", "alice", "second")
    chat(storage, service, "u-bob", "bob", "yo")
    last_alice = chat(storage, service, "u-alice", "alice", "third")
    assert service.get_buffer_status() == {"messageCount": 4, "userCount": 2, "isPaused": False}

    await advance(service, ticker)

    callback.assert_awaited_once()
    selected, context = callback.await_args.args
    assert selected is last_alice
    assert context.startswith("RECENT CHAT:")
    assert ticker.delays[0] == 5
    assert service.get_buffer_messages() == []
    assert service.status is DachiStreamStatus.COLLECTING
    assert service.get_state().selected_message is last_alice
    assert LogType.SELECTION in log_types(service)
    service.stop()


@pytest.mark.asyncio
async def test_status_walks_through_cycle_phases(storage, service):
    statuses = []
    await service.start(AsyncMock(), lambda state: statuses.append(state.status))
    service.add_message(make_message("alice"))
    statuses.clear()

    await service.run_cycle()

    assert statuses == [
        DachiStreamStatus.PROCESSING,
        DachiStreamStatus.SELECTING_MESSAGE,
        DachiStreamStatus.BUILDING_CONTEXT,
        DachiStreamStatus.WAITING_FOR_AI,
        DachiStreamStatus.COLLECTING,
    ]
    service.stop()


@pytest.mark.asyncio
async def test_paused_cycle_keeps_buffer(service, ticker):
    callback = AsyncMock()
    await service.start(callback)
    await settle()
    service.pause()
    for i in range(5):
        service.add_message(make_message(f"user{i}"))

    await advance(service, ticker)

    callback.assert_not_awaited()
    assert len(service.get_buffer_messages()) == 5
    assert service.status is DachiStreamStatus.PAUSED

    service.resume()
    assert service.status is DachiStreamStatus.COLLECTING
    await advance(service, ticker)
    callback.assert_awaited_once()
    assert service.get_buffer_messages() == []
    service.stop()


@pytest.mark.asyncio
async def test_empty_buffer_skips_cycle(service):
    callback = AsyncMock()
    await service.start(callback)

    await service.run_cycle()

    callback.assert_not_awaited()
    assert service.status is DachiStreamStatus.COLLECTING
    assert service.get_logs()[-1].message == "Cycle skipped - no messages in buffer"
    service.stop()


@pytest.mark.asyncio
async def test_disabled_clears_buffer(storage, service):
    storage.update_settings(dachipool_enabled=False)
    callback = AsyncMock()
    await service.start(callback)
    service.add_message(make_message("alice"))
    service.add_message(make_message("bob"))

    await service.run_cycle()

    callback.assert_not_awaited()
    assert service.get_buffer_messages() == []
    assert service.status is DachiStreamStatus.DISABLED
    service.stop()


@pytest.mark.asyncio
async def test_missing_settings_row_counts_as_disabled(ticker):
    storage = InMemoryStorage()
    service = DachiStreamService(storage, sleep=ticker.sleep)
    callback = AsyncMock()
    await service.start(callback)
    service.add_message(make_message("alice"))

    await service.run_cycle()

    callback.assert_not_awaited()
    assert service.get_buffer_messages() == []
    assert service.status is DachiStreamStatus.DISABLED
    service.stop()


@pytest.mark.asyncio
async def test_callback_error_is_logged_and_buffer_cleared(service):
    callback = AsyncMock(side_effect=RuntimeError("model exploded"))
    await service.start(callback)
    service.add_message(make_message("alice"))

    await service.run_cycle()

    errors = [e for e in service.get_logs() if e.type is LogType.ERROR]
    assert len(errors) == 1
    assert "model exploded" in errors[0].message
    assert service.get_state().error == "model exploded"
    assert service.get_buffer_messages() == []
    assert service.status is DachiStreamStatus.COLLECTING
    service.stop()


@pytest.mark.asyncio
async def test_settings_failure_is_a_cycle_error(ticker):
    storage = MagicMock()
    storage.get_settings = AsyncMock(side_effect=[[StreamSettings()], ConnectionError("db gone")])
    service = DachiStreamService(storage, sleep=ticker.sleep)
    await service.start(AsyncMock())
    service.add_message(make_message("alice"))

    await service.run_cycle()

    assert service.get_state().error == "db gone"
    assert service.get_buffer_messages() == []
    assert service.status is DachiStreamStatus.COLLECTING
    service.stop()


@pytest.mark.asyncio
async def test_next_dispatch_clears_previous_error(service):
    callback = AsyncMock(side_effect=[RuntimeError("once"), None])
    await service.start(callback)

    service.add_message(make_message("alice"))
    await service.run_cycle()
    assert service.get_state().error == "once"

    service.add_message(make_message("bob"))
    await service.run_cycle()
    assert service.get_state().error is None
    service.stop()


@pytest.mark.asyncio
async def test_selection_error_is_logged_and_buffer_cleared(storage, service):
    storage.update_settings(dachiastream_selection_strategy="new_chatter")
    storage.get_all_user_insights = AsyncMock(side_effect=RuntimeError("insights down"))
    callback = AsyncMock()
    await service.start(callback)
    service.add_message(make_message("alice"))
    service.add_message(make_message("bob"))

    await service.run_cycle()

    callback.assert_not_awaited()
    errors = [e for e in service.get_logs() if e.type is LogType.ERROR]
    assert len(errors) == 1
    assert "insights down" in errors[0].message
    assert service.get_state().error == "insights down"
    assert service.get_buffer_messages() == []
    assert service.status is DachiStreamStatus.COLLECTING
    service.stop()


@pytest.mark.asyncio
async def test_new_chatter_uses_insight_totals(storage, service):
    storage.update_settings(dachiastream_selection_strategy="new_chatter")
    storage.upsert_user_insight(UserInsight(user_id="vet", total_messages=500))
    storage.upsert_user_insight(UserInsight(user_id="fresh", total_messages=1))
    callback = AsyncMock()
    await service.start(callback)
    service.add_message(make_message("vet"))
    fresh = make_message("fresh")
    service.add_message(fresh)

    await service.run_cycle()

    assert callback.await_args.args[0] is fresh
    service.stop()


@pytest.mark.asyncio
async def test_callback_timeout_is_reported(storage, ticker):
    service = DachiStreamService(storage, callback_timeout=0.05, sleep=ticker.sleep)

    async def never_finishes(message, context):
        await asyncio.Event().wait()

    await service.start(never_finishes)
    service.add_message(make_message("alice"))

    await service.run_cycle()

    assert service.get_state().error == "TimeoutError"
    assert service.get_buffer_messages() == []
    service.stop()


@pytest.mark.asyncio
async def test_stop_prevents_further_cycles(service, ticker):
    callback = AsyncMock()
    await service.start(callback)
    await settle()
    service.add_message(make_message("alice"))

    service.stop()
    await advance(service, ticker)

    callback.assert_not_awaited()
    assert not service.is_running
    assert service.status is DachiStreamStatus.IDLE
    assert len(service.get_buffer_messages()) == 1


@pytest.mark.asyncio
async def test_start_twice_is_ignored(service, ticker):
    await service.start(AsyncMock())
    await settle()
    await service.start(AsyncMock())
    await settle()

    assert ticker.delays == [15]
    service.stop()


@pytest.mark.asyncio
async def test_start_honors_paused_setting_and_bad_interval(storage, service):
    storage.update_settings(dachiastream_paused=True, dachiastream_cycle_interval=3)

    await service.start(AsyncMock())

    assert service.is_paused
    assert service.status is DachiStreamStatus.PAUSED
    assert service.cycle_interval == 15
    service.stop()


@pytest.mark.asyncio
async def test_interval_update_restarts_timer(service, ticker):
    callback = AsyncMock()
    await service.start(callback)
    await settle()

    assert service.update_cycle_interval(30)
    await settle()
    assert ticker.delays == [15, 30]

    service.add_message(make_message("alice"))
    await advance(service, ticker)
    callback.assert_awaited_once()
    service.stop()


@pytest.mark.asyncio
async def test_slow_callback_lets_cycles_overlap(service, ticker):
    release = asyncio.Event()
    calls = []

    async def slow(message, context):
        calls.append(message)
        await release.wait()

    await service.start(slow)
    await settle()
    service.add_message(make_message("alice"))

    ticker.tick()
    await settle()
    ticker.tick()
    await settle()
    assert len(calls) == 2

    release.set()
    await service.wait_cycles()
    assert service.get_buffer_messages() == []
    service.stop()


@pytest.mark.asyncio
async def test_overlap_guard_skips_ticks(storage, ticker):
    service = DachiStreamService(storage, skip_overlapping_cycles=True, sleep=ticker.sleep)
    release = asyncio.Event()
    calls = []

    async def slow(message, context):
        calls.append(message)
        await release.wait()

    await service.start(slow)
    await settle()
    service.add_message(make_message("alice"))

    ticker.tick()
    await settle()
    ticker.tick()
    await settle()
    assert len(calls) == 1
    assert any("previous cycle still in progress" in e.message for e in service.get_logs())

    release.set()
    await service.wait_cycles()
    service.stop()


@pytest.mark.asyncio
async def test_observer_errors_do_not_break_ingestion(service):
    def broken(state):
        raise RuntimeError("ui down")

    await service.start(AsyncMock(), broken)
    assert service.add_message(make_message("alice")) is True
    assert len(service.get_buffer_messages()) == 1
    service.stop()


def test_capped_buffer_reports_drops(storage):
    service = DachiStreamService(storage, max_buffer_size=1, overflow_policy=OverflowPolicy.DROP_NEWEST)
    assert service.add_message(make_message("alice")) is True
    assert service.add_message(make_message("bob")) is False
    assert service.get_logs()[-1].message == "Buffer full - dropped message from bob"


@pytest.mark.asyncio
async def test_cycle_finishing_after_stop_stays_idle(service):
    release = asyncio.Event()

    async def slow(message, context):
        await release.wait()

    await service.start(slow)
    service.add_message(make_message("alice"))
    cycle = asyncio.create_task(service.run_cycle())
    await settle()
    assert service.status is DachiStreamStatus.WAITING_FOR_AI

    service.stop()
    release.set()
    await cycle

    assert service.status is DachiStreamStatus.IDLE
    assert service.get_buffer_messages() == []
