"""Tests for the FastAPI app and the /ws bridge."""

import pytest
from fastapi.testclient import TestClient

import web.state as state
from conftest import text_chunks
from runtime.manager import RuntimeManager
from web import app


@pytest.fixture
def client(make_runtime):
    runtimes = {}

    def factory(session_id):
        runtime, _, _ = make_runtime([text_chunks("Hi from the agent"), text_chunks("Second reply")])
        runtimes[session_id] = runtime
        return runtime

    state.set_manager(RuntimeManager(factory))
    with TestClient(app) as c:
        c.runtimes = runtimes
        yield c
    state.set_manager(None)


def receive_until(ws, event_type, limit=50):
    seen = []
    for _ in range(limit):
        msg = ws.receive_json()
        seen.append(msg)
        if msg["type"] == event_type:
            return msg, seen
    raise AssertionError(f"no {event_type!r} message in {[m['type'] for m in seen]}")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "sessions": 0}


def test_submit_streams_events_until_done(client):
    with client.websocket_connect("/ws?session_id=s1") as ws:
        init = ws.receive_json()
        assert init["type"] == "init"
        assert init["session_id"] == "s1"
        assert init["data"]["model_id"] == "test-model"

        ws.send_json({"type": "submit", "text": "hello"})
        done, seen = receive_until(ws, "done")

    types = [m["type"] for m in seen]
    assert "history-update" in types
    assert "stream-token" in types
    assert done["content"] == "Hi from the agent"
    assert done["task_id"] == "default"
    assert client.get("/health").json()["sessions"] == 1


def test_session_id_is_assigned_when_missing(client):
    with client.websocket_connect("/ws") as ws:
        init = ws.receive_json()
    assert init["session_id"]
    assert init["session_id"] in client.runtimes


def test_bad_messages_get_error_replies(client):
    with client.websocket_connect("/ws?session_id=s1") as ws:
        ws.receive_json()
        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "content": "Invalid JSON"}

        ws.send_json({"type": "teleport"})
        assert "Unknown message type" in ws.receive_json()["content"]

        ws.send_json({"type": "confirm", "id": "confirm-nope", "approved": True})
        assert "Unknown or already answered confirmation" in ws.receive_json()["content"]

        ws.send_json({"type": "submit", "text": "   "})
        assert ws.receive_json()["type"] == "error"


def test_config_and_status(client):
    with client.websocket_connect("/ws?session_id=s1") as ws:
        ws.receive_json()
        ws.send_json({"type": "config", "model": "other-model", "max_tokens": 2048, "api_key": "k"})
        reply = ws.receive_json()
        assert reply["type"] == "config"
        assert reply["data"]["model_id"] == "other-model"
        assert reply["data"]["max_tokens"] == 2048
        assert reply["data"]["has_api_key"] is True

        ws.send_json({"type": "status"})
        status = ws.receive_json()
        assert status["type"] == "status"
        assert status["data"]["model_id"] == "other-model"
        assert status["data"]["active_tasks"] == []
