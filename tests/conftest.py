import pytest

from dachistream.engine.scheduler import DachiStreamService
from dachistream.storage.base import StreamSettings
from dachistream.storage.memory import InMemoryStorage

from support import ManualTicker


@pytest.fixture
def storage():
    return InMemoryStorage(settings=StreamSettings())


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest.fixture
def service(storage, ticker):
    return DachiStreamService(storage, sleep=ticker.sleep)
