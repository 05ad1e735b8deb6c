import json
import logging

import pytest
from fastapi.testclient import TestClient

from gemini_relay.config import RelaySettings
from gemini_relay.error_handler import AuthenticationRequired, BackendRateLimited
from gemini_relay.message_adapter import DONE_FRAME
from gemini_relay.model_definitions import ModelTiers
from gemini_relay.orchestrator import RequestOrchestrator
from relay_app.log_stream import LogBroadcastHandler
from relay_app.main import create_app

from conftest import FakeBackend, FakeCredentialManager, text_event

PRIMARY = "gemini-2.5-pro"
FALLBACK = "gemini-2.5-flash"

CHAT = {"model": PRIMARY, "messages": [{"role": "user", "content": "hello"}]}


def _client(tmp_path, scripts, manager=None, requires_credentials=False, **settings_kwargs):
    settings = RelaySettings(log_dir=tmp_path, **settings_kwargs)
    backend = FakeBackend(scripts, requires_credentials=requires_credentials)
    orchestrator = RequestOrchestrator(backend, manager, ModelTiers(PRIMARY, FALLBACK))
    app = create_app(settings, orchestrator=orchestrator, broadcaster=LogBroadcastHandler())
    return TestClient(app), backend


def _sse_frames(body: str):
    return [f"data: {part}" for part in body.split("data: ")[1:]]


def test_non_streaming_completion(tmp_path):
    client, _ = _client(tmp_path, {PRIMARY: [text_event("Hi "), text_event("there")]})
    with client:
        response = client.post("/v1/chat/completions", json=CHAT, headers={"X-Request-ID": "req-1"})

    assert response.status_code == 200
    assert response.headers["x-request-id"] == "req-1"
    body = response.json()
    assert body["object"] == "chat.completion"
    assert body["model"] == PRIMARY
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hi there"}


def test_streaming_completion(tmp_path):
    client, backend = _client(tmp_path, {PRIMARY: [text_event("Hi "), text_event("there")]})
    with client:
        response = client.post("/v1/chat/completions", json={**CHAT, "stream": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = _sse_frames(response.text)
    assert frames[-1] == DONE_FRAME
    contents = [
        json.loads(f[len("data: ") : -2])["choices"][0]["delta"].get("content")
        for f in frames[:-1]
    ]
    assert contents == ["Hi ", "there", None]
    assert backend.closed == 1


def test_streaming_falls_back_to_secondary_model(tmp_path):
    scripts = {
        PRIMARY: [BackendRateLimited("quota", model=PRIMARY)],
        FALLBACK: [text_event("fallback answer")],
    }
    client, backend = _client(tmp_path, scripts)
    with client:
        response = client.post("/v1/chat/completions", json={**CHAT, "stream": True})

    assert response.status_code == 200
    first = json.loads(_sse_frames(response.text)[0][len("data: ") : -2])
    assert first["model"] == FALLBACK
    assert backend.models_called == [PRIMARY, FALLBACK]


@pytest.mark.parametrize("stream", [False, True])
def test_rate_limit_on_both_models_returns_429(tmp_path, stream):
    scripts = {
        PRIMARY: [BackendRateLimited("quota", model=PRIMARY)],
        FALLBACK: [BackendRateLimited("quota", model=FALLBACK)],
    }
    client, _ = _client(tmp_path, scripts)
    with client:
        response = client.post("/v1/chat/completions", json={**CHAT, "stream": stream})

    assert response.status_code == 429
    assert response.headers["content-type"].startswith("application/json")
    assert response.json()["error"]["type"] == "rate_limit_exceeded"


@pytest.mark.parametrize("stream", [False, True])
def test_authentication_failure_returns_500(tmp_path, stream):
    manager = FakeCredentialManager(error=AuthenticationRequired("no credential file"))
    client, backend = _client(
        tmp_path, {PRIMARY: [text_event("never")]}, manager=manager, requires_credentials=True
    )
    with client:
        response = client.post("/v1/chat/completions", json={**CHAT, "stream": stream})

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["type"] == "authentication_error"
    assert "no credential file" in error["message"]
    assert backend.requests == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": b"{not json", "headers": {"Content-Type": "application/json"}},
        {"json": {"model": PRIMARY}},
        {"json": {"model": PRIMARY, "messages": []}},
        {"json": {**CHAT, "temperature": 5}},
    ],
)
def test_invalid_requests_return_400(tmp_path, kwargs):
    client, backend = _client(tmp_path, {})
    with client:
        response = client.post("/v1/chat/completions", **kwargs)

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_request_error"
    assert backend.requests == []


def test_models_and_status(tmp_path):
    client, _ = _client(tmp_path, {})
    with client:
        models = client.get("/v1/models").json()
        status = client.get("/api/status").json()
        root = client.get("/")

    assert models["object"] == "list"
    assert [m["id"] for m in models["data"]] == [PRIMARY, FALLBACK]
    assert all(m["owned_by"] == "google" for m in models["data"])
    assert status["status"] == "running"
    assert status["backend"] == "fake"
    assert root.status_code == 200


def test_proxy_api_key_is_enforced(tmp_path):
    client, _ = _client(tmp_path, {PRIMARY: [text_event("ok")]}, proxy_api_key="secret")
    with client:
        missing = client.post("/v1/chat/completions", json=CHAT)
        wrong = client.get("/v1/models", headers={"Authorization": "Bearer nope"})
        ok = client.post(
            "/v1/chat/completions", json=CHAT, headers={"Authorization": "Bearer secret"}
        )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert ok.status_code == 200


def test_webui_directory_is_served(tmp_path):
    webui = tmp_path / "webui"
    webui.mkdir()
    (webui / "index.html").write_text("<h1>dashboard</h1>")
    client, _ = _client(tmp_path, {}, webui_dir=webui)
    with client:
        response = client.get("/")

    assert response.status_code == 200
    assert "dashboard" in response.text


def test_log_websocket_receives_records(tmp_path):
    broadcaster = LogBroadcastHandler()
    settings = RelaySettings(log_dir=tmp_path)
    orchestrator = RequestOrchestrator(FakeBackend({}), None, ModelTiers(PRIMARY, FALLBACK))
    app = create_app(settings, orchestrator=orchestrator, broadcaster=broadcaster)

    root_logger = logging.getLogger()
    previous_level = root_logger.level
    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(broadcaster)
    try:
        with TestClient(app) as client:
            with client.websocket_connect("/ws/logs") as websocket:
                message = websocket.receive_json()
    finally:
        root_logger.removeHandler(broadcaster)
        root_logger.setLevel(previous_level)

    assert message["type"] == "info"
    assert message["message"] == "New log client connected."
    assert "timestamp" in message
    assert broadcaster.subscriber_count == 0
