import asyncio
import json
import time
from pathlib import Path
from typing import Any, AsyncIterator

import pytest
from fastapi.testclient import TestClient

from llmbridge.errors import ErrorKind, LLMError
from llmbridge.providers.dummy import DummyProvider, create_dummy_provider
from llmbridge.server import create_app
from llmbridge.services.manager import Manager, create_manager
from llmbridge.config import ManagerConfig
from llmbridge.types import LLMRequest, ProviderConfig, StreamChunk

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
CHAT_BODY = {"messages": [{"role": "user", "content": "hi"}]}


class _BrokenStreamProvider(DummyProvider):
    def __init__(self) -> None:
        super().__init__(ProviderConfig(id="broken", name="broken", type="local"))

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]:
        yield StreamChunk(content="half")
        raise LLMError("backend hung up", ErrorKind.CONNECTION_FAILED, self.id, retryable=True)


def _manager(*providers: DummyProvider) -> Manager:
    manager = create_manager(ManagerConfig(retry_attempts=0))

    async def setup() -> None:
        for provider in providers:
            await manager.register_provider(provider)

    asyncio.run(setup())
    return manager


def _events(text: str) -> list[tuple[str, Any]]:
    events = []
    for frame in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def test_chat_success() -> None:
    with TestClient(create_app(_manager(create_dummy_provider("echo")))) as client:
        response = client.post("/v1/chat", json=CHAT_BODY)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["response"] == "dummy:hi"
    assert body["finish_reason"] == "stop"
    assert body["usage"]["total_tokens"] >= 1


def test_chat_invalid_request_is_reported() -> None:
    with TestClient(create_app(_manager(create_dummy_provider("echo")))) as client:
        response = client.post("/v1/chat", json={"messages": []})

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": "Request must contain at least one message",
        "code": "INVALID_REQUEST",
        "provider": "echo",
        "retryable": False,
    }


def test_chat_without_providers_reports_manager_error() -> None:
    with TestClient(create_app(_manager())) as client:
        response = client.post("/v1/chat", json=CHAT_BODY)

    assert response.status_code == 503
    assert response.json()["provider"] == "manager"


def test_stream_emits_chunks_then_done() -> None:
    with TestClient(create_app(_manager(create_dummy_provider("echo")))) as client:
        response = client.post("/v1/chat/stream", json={"messages": [{"role": "user", "content": "a b"}]})

    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response.text)
    assert [name for name, _ in events] == ["chunk", "chunk", "done"]
    assert "".join(data["content"] for name, data in events if name == "chunk") == "dummy:a b"
    assert events[-1][1]["done"] is True
    assert events[-1][1]["metadata"]["finish_reason"] == "stop"


def test_stream_failure_emits_error_event() -> None:
    with TestClient(create_app(_manager(_BrokenStreamProvider()))) as client:
        response = client.post("/v1/chat/stream", json=CHAT_BODY)

    events = _events(response.text)
    assert [name for name, _ in events] == ["chunk", "error"]
    assert events[-1][1]["code"] == "CONNECTION_FAILED"
    assert events[-1][1]["provider"] == "broken"


class _StalledStreamProvider(DummyProvider):
    def __init__(self) -> None:
        super().__init__(ProviderConfig(id="stalled", name="stalled", type="local"))
        self.cancelled = False

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        yield StreamChunk(content="late")


def test_stream_deadline_cancels_stalled_backend() -> None:
    provider = _StalledStreamProvider()
    with TestClient(create_app(_manager(provider))) as client:
        started = time.monotonic()
        response = client.post("/v1/chat/stream", json={**CHAT_BODY, "timeout_ms": 100})
        elapsed = time.monotonic() - started

    assert elapsed < 2.0
    assert provider.cancelled is True
    events = _events(response.text)
    assert [name for name, _ in events] == ["error"]
    assert events[0][1]["code"] == "TIMEOUT"
    assert events[0][1]["provider"] == "bridge"
    assert events[0][1]["retryable"] is False


def test_provider_selection_routes() -> None:
    manager = _manager(create_dummy_provider("a"), create_dummy_provider("b"))
    with TestClient(create_app(manager)) as client:
        assert client.put("/v1/providers/active", json={"provider_id": "b"}).json()["success"] is True
        assert client.put("/v1/providers/fallback", json={"provider_id": "a"}).status_code == 200
        missing = client.put("/v1/providers/active", json={"provider_id": "ghost"})
        health = client.get("/healthz").json()

    assert missing.status_code == 404
    assert missing.json()["success"] is False
    assert health["active_provider"] == "b"
    assert health["fallback_provider"] == "a"
    assert health["state"] == "has-active-provider"


def test_providers_and_models_listing() -> None:
    manager = _manager(create_dummy_provider("a", model="m-a"), create_dummy_provider("b", model="m-b"))
    with TestClient(create_app(manager)) as client:
        statuses = client.get("/v1/providers").json()["providers"]
        models = client.get("/v1/models").json()

    assert statuses["a"]["available"] is True
    assert [m["id"] for m in models["data"]] == ["m-a", "m-b"]


def test_app_bootstraps_from_config_dir(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LLMBRIDGE_USE_DUMMY", "1")
    with TestClient(create_app(config_dir=str(CONFIG_DIR))) as client:
        health = client.get("/healthz").json()
        chat = client.post("/v1/chat", json=CHAT_BODY).json()

    assert health["providers"] == ["dummy", "dummy_backup"]
    assert health["active_provider"] == "dummy"
    assert chat["response"] == "dummy:hi"
