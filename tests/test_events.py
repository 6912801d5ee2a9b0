import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from dachistream.api.events import MonitorEventBus, make_event
from dachistream.core.state import DachiStreamLog, LogType
from dachistream.engine.scheduler import DachiStreamService
from dachistream.storage.memory import InMemoryStorage


def fake_socket(fail=False):
    ws = MagicMock()
    ws.send_json = AsyncMock(side_effect=ConnectionError("gone") if fail else None)
    return ws


def test_event_envelope():
    evt = make_event("state", {"status": "idle"})
    assert set(evt) == {"v", "type", "data", "ts", "id"}
    assert evt["type"] == "state"
    assert make_event("ping")["data"] == {}


def test_state_change_without_clients_or_loop_is_a_no_op():
    bus = MonitorEventBus()
    service = DachiStreamService(InMemoryStorage())
    bus.on_state_change(service.get_state())
    assert bus._pending == set()


@pytest.mark.asyncio
async def test_state_and_logs_fan_out_and_drop_stale_clients():
    bus = MonitorEventBus()
    good, bad = fake_socket(), fake_socket(fail=True)
    bus.clients.update({good, bad})
    service = DachiStreamService(InMemoryStorage())

    bus.on_state_change(service.get_state())
    bus.on_log(DachiStreamLog(type=LogType.STATUS, message="DachiStream paused"))
    for _ in range(5):
        await asyncio.sleep(0)

    sent = [call.args[0]["type"] for call in good.send_json.await_args_list]
    assert sent == ["state", "log"]
    assert bus.clients == {good}


@pytest.mark.asyncio
async def test_service_log_listener_feeds_bus():
    bus = MonitorEventBus()
    ws = fake_socket()
    bus.clients.add(ws)
    service = DachiStreamService(InMemoryStorage())
    service.logs.add_listener(bus.on_log)

    service.pause()
    for _ in range(5):
        await asyncio.sleep(0)

    payload = ws.send_json.await_args.args[0]
    assert payload["type"] == "log"
    assert payload["data"]["message"] == "DachiStream paused"
