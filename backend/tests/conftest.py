"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from roomrelay.chat.router import set_engine
from roomrelay.chat.store import MessageStore
from roomrelay.config import RelayConfig, StoreSettings, reset_config, set_config
from roomrelay.main import app


class FakeChannel:
    """Outbound channel that records everything sent to it."""

    def __init__(self) -> None:
        self.sent = []

    async def send_json(self, payload: dict) -> None:
        self.sent.append(payload)

    def of_type(self, event_type: str) -> list:
        return [p for p in self.sent if p.get("type") == event_type]


class BrokenChannel:
    """Outbound channel whose peer has gone away."""

    async def send_json(self, payload: dict) -> None:
        raise RuntimeError("connection closed")


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "messages.json"


@pytest.fixture(autouse=True)
def isolated_relay(store_path):
    """Point the relay at a per-test snapshot file and fresh singletons."""
    set_config(RelayConfig(store=StoreSettings(path=str(store_path))))
    MessageStore.reset_instance()
    set_engine(None)
    yield
    set_engine(None)
    MessageStore.reset_instance()
    reset_config()


@pytest.fixture
def channel_factory():
    return FakeChannel


@pytest.fixture
def broken_channel():
    return BrokenChannel()


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app."""
    return TestClient(app)
