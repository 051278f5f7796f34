"""Tests for api/websocket.py -- token-scoped task notification streams."""

from collections.abc import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.websocket import CLOSE_FORBIDDEN, set_token_issuer, websocket_router
from events.bus import TopicHub, get_topic_hub, reset_topic_hub
from events.credentials import TopicTokenIssuer
from tests.conftest import TOKEN_SECRET

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def issuer() -> TopicTokenIssuer:
    issuer = TopicTokenIssuer(TOKEN_SECRET, ttl_minutes=5)
    set_token_issuer(issuer)
    return issuer


@pytest.fixture()
def client(issuer: TopicTokenIssuer) -> Generator[TestClient, None, None]:
    reset_topic_hub()
    app = FastAPI()
    app.include_router(websocket_router)
    with TestClient(app) as c:
        yield c
    reset_topic_hub()


def _envelope(task_id: str) -> dict:
    return {
        "type": "Completed",
        "taskId": task_id,
        "stageType": "persona",
        "payload": {"personas": []},
        "timestamp": 1700000000.0,
    }


# =========================================================================
# Subscription
# =========================================================================


class TestTaskNotifications:
    """WS /ws/tasks/{task_id}?token=..."""

    def test_receives_published_envelope(
        self, client: TestClient, issuer: TopicTokenIssuer
    ) -> None:
        token = issuer.issue(["tasks/abc"])
        hub: TopicHub = get_topic_hub()

        with client.websocket_connect(f"/ws/tasks/abc?token={token}") as ws:
            # The pong proves the subscription is registered.
            ws.send_json({"type": "ping", "timestamp": 1})
            assert ws.receive_json() == {"type": "pong", "timestamp": 1}

            delivered = client.portal.call(hub.publish, "tasks/abc", _envelope("abc"))
            assert delivered == 1
            assert ws.receive_json() == _envelope("abc")

    def test_closed_topic_ends_stream(self, client: TestClient, issuer: TopicTokenIssuer) -> None:
        token = issuer.issue(["tasks/abc"])
        hub = get_topic_hub()

        with client.websocket_connect(f"/ws/tasks/abc?token={token}") as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()
            client.portal.call(hub.close_topic, "tasks/abc")
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

        assert hub.get_subscriber_count("tasks/abc") == 0

    def test_unknown_command_is_ignored(
        self, client: TestClient, issuer: TopicTokenIssuer
    ) -> None:
        token = issuer.issue(["tasks/abc"])
        with client.websocket_connect(f"/ws/tasks/abc?token={token}") as ws:
            ws.send_json({"type": "cancel"})
            ws.send_json(["not", "a", "dict"])
            ws.send_json({"type": "ping", "timestamp": 2})
            assert ws.receive_json() == {"type": "pong", "timestamp": 2}


# =========================================================================
# Rejected subscriptions
# =========================================================================


class TestRejectedSubscription:
    @pytest.mark.parametrize("query", ["", "?token=", "?token=garbage"])
    def test_missing_or_invalid_token(self, client: TestClient, query: str) -> None:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect(f"/ws/tasks/abc{query}") as ws:
                ws.receive_json()
        assert excinfo.value.code == CLOSE_FORBIDDEN

    def test_token_for_another_topic(self, client: TestClient, issuer: TopicTokenIssuer) -> None:
        token = issuer.issue(["tasks/other"])
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect(f"/ws/tasks/abc?token={token}") as ws:
                ws.receive_json()
        assert excinfo.value.code == CLOSE_FORBIDDEN

    def test_token_signed_with_other_secret(self, client: TestClient) -> None:
        token = TopicTokenIssuer("another-secret-of-sufficient-length-123").issue(["tasks/abc"])
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect(f"/ws/tasks/abc?token={token}") as ws:
                ws.receive_json()
        assert excinfo.value.code == CLOSE_FORBIDDEN
        assert get_topic_hub().get_subscriber_count("tasks/abc") == 0
