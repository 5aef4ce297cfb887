import pytest

from helpers.fakes import FakeScheduler, FakeStreamConnection
from portfolio_stream.config import StreamConfig


@pytest.fixture
def fake_connection() -> FakeStreamConnection:
    return FakeStreamConnection()


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def stream_config() -> StreamConfig:
    return StreamConfig(base_url="http://dashboard.test")
