"""Shared test fixtures and configuration for backend tests."""
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from chatsync.chat.errors import failures
from chatsync.main import app
from chatsync.store.service import RecordStore


class FakeWebSocket:
    """Records frames sent by the server; optionally fails every send."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[dict] = []
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    def of_type(self, event_type: str) -> List[dict]:
        return [frame for frame in self.sent if frame.get("type") == event_type]

    def last(self, event_type: Optional[str] = None) -> Optional[dict]:
        frames = self.of_type(event_type) if event_type else self.sent
        return frames[-1] if frames else None


@pytest.fixture(autouse=True)
def record_store():
    """Use an in-memory RecordStore for each test.

    The app lifespan calls RecordStore.get_instance() and picks this
    instance up, so no test ever touches a chatsync.duckdb file.
    """
    RecordStore.reset_instance()
    store = RecordStore.get_instance(db_path=":memory:")
    failures.reset()
    yield store
    RecordStore.reset_instance()


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app with lifespan running.

    Entering the client shares one event loop between every WebSocket
    opened through it, like a real server process.
    """
    with TestClient(app) as client:
        yield client
