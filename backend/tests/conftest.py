"""Shared test fixtures and configuration for Courier backend tests.

Tests run against a temporary DuckDB file, the in-memory message cache and
the process-local presence backend; nothing needs Redis.
"""
import uuid
from typing import List

import pytest
from fastapi.testclient import TestClient

from courier.chat.manager import Session
from courier.config import AppConfig
from courier.main import create_app
from courier.services import build_services

TEST_SECRET = "test-secret-key"


def new_id() -> str:
    return str(uuid.uuid4())


class FakeWebSocket:
    """Records frames sent to a session; can be switched to fail like a dead socket."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.broken = False

    async def send_json(self, data: dict) -> None:
        if self.broken:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def of_type(self, event: str) -> List[dict]:
        """Payloads of every frame of the given event type, in order."""
        return [frame["data"] for frame in self.sent if frame["type"] == event]

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]

    def clear(self) -> None:
        self.sent.clear()


async def connect_session(services, user_id: str):
    """Attach a fake session for *user_id* the way the WebSocket handler does."""
    websocket = FakeWebSocket()
    session = Session(websocket, user_id)
    await services.presence.mark_online(user_id, session.connection_id)
    services.manager.register(session)
    return session, websocket


async def disconnect_session(services, session) -> None:
    services.manager.unregister(session)
    await services.presence.mark_offline(session.user_id, session.connection_id)


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        storage={
            "db_path": str(tmp_path / "courier.duckdb"),
            "media_dir": str(tmp_path / "media"),
            "max_image_bytes": 1024,
        },
        secrets={"auth": {"secret_key": TEST_SECRET}},
    )


@pytest.fixture
def services(config):
    """A service container without the HTTP app, for engine-level tests."""
    container = build_services(config)
    yield container
    container.database.close()


@pytest.fixture
def api_client(config):
    """TestClient around a fresh app; the lifespan builds and closes services."""
    with TestClient(create_app(config)) as client:
        yield client


@pytest.fixture
def app_services(api_client):
    return api_client.app.state.services


def auth_headers(services, user_id: str) -> dict:
    return {"Authorization": f"Bearer {services.tokens.issue(user_id)}"}
