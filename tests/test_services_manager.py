import asyncio
from typing import AsyncIterator

import pytest

from llmbridge import (
    create_chat_request,
    create_completion_request,
    has_available_providers,
    provider_summary,
)
from llmbridge.config import ManagerConfig
from llmbridge.errors import ErrorKind, LLMError
from llmbridge.network import retry
from llmbridge.providers.dummy import DummyProvider, create_dummy_provider
from llmbridge.services.manager import Manager, ManagerState, create_manager
from llmbridge.types import LLMRequest, ProviderConfig, StreamChunk, StreamOptions


class _FlakyStreamProvider(DummyProvider):
    """Fails to open its stream ``failures`` times before streaming normally."""

    def __init__(self, failures: int) -> None:
        super().__init__(ProviderConfig(id="flaky", name="flaky", type="local", default_model="flaky"))
        self.failures = failures
        self.opens = 0

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]:
        self.opens += 1
        if self.opens <= self.failures:
            raise LLMError("connection reset", ErrorKind.CONNECTION_FAILED, self.id, retryable=True)
        async for chunk in super().stream(request):
            yield chunk


@pytest.fixture
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    async def no_sleep(delay: float) -> None:
        return None

    monkeypatch.setattr(retry.asyncio, "sleep", no_sleep)


def test_state_transitions() -> None:
    manager = create_manager()
    assert manager.state is ManagerState.UNCONFIGURED

    async def scenario() -> None:
        await manager.register_provider(create_dummy_provider("a"))
        assert manager.state is ManagerState.HAS_ACTIVE_PROVIDER
        await manager.register_provider(create_dummy_provider("b"))
        manager.set_active_provider("b")
        assert manager.get_active_provider().id == "b"
        await manager.unregister_provider("b")
        assert manager.get_active_provider().id == "a"
        await manager.cleanup()

    asyncio.run(scenario())
    assert manager.state is ManagerState.UNCONFIGURED
    assert manager.get_active_provider() is None


def test_requests_without_active_provider_fail_with_manager_error() -> None:
    manager = Manager()
    request = create_chat_request([{"role": "user", "content": "hi"}])

    async def consume_stream() -> None:
        async for _ in manager.stream(request):
            pass

    for call in (
        lambda: manager.chat(request),
        lambda: manager.complete("hi"),
        consume_stream,
    ):
        with pytest.raises(LLMError) as excinfo:
            asyncio.run(call())
        assert excinfo.value.code is ErrorKind.UNKNOWN
        assert excinfo.value.provider == "manager"


def test_chat_complete_and_stream_through_active_provider() -> None:
    manager = create_manager(ManagerConfig(retry_attempts=0))

    async def scenario():
        await manager.register_provider(create_dummy_provider("echo"))
        response = await manager.chat(create_chat_request([{"role": "user", "content": "hello there"}]))
        text = await manager.complete("ping")
        chunks = [c async for c in manager.stream(create_completion_request("a b"))]
        return response, text, chunks

    response, text, chunks = asyncio.run(scenario())

    assert response.content == "dummy:hello there"
    assert text == "dummy:ping"
    assert "".join(c.content for c in chunks) == "dummy:a b"
    assert [c.done for c in chunks].count(True) == 1
    assert chunks[-1].done


def test_stream_open_is_retried(no_backoff: None) -> None:
    manager = create_manager(ManagerConfig(retry_attempts=2))
    provider = _FlakyStreamProvider(failures=2)

    async def scenario() -> list[StreamChunk]:
        await manager.register_provider(provider)
        return [c async for c in manager.stream(create_completion_request("x"))]

    chunks = asyncio.run(scenario())
    assert provider.opens == 3
    assert chunks[-1].done is True


def test_stream_open_gives_up_after_retry_attempts(no_backoff: None) -> None:
    manager = create_manager(ManagerConfig(retry_attempts=1))
    provider = _FlakyStreamProvider(failures=5)

    async def scenario() -> None:
        await manager.register_provider(provider)
        async for _ in manager.stream(create_completion_request("x")):
            pass

    with pytest.raises(LLMError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.code is ErrorKind.CONNECTION_FAILED
    assert provider.opens == 2


def test_stream_with_callbacks_via_manager() -> None:
    manager = create_manager()
    seen: list[str] = []

    async def scenario():
        await manager.register_provider(create_dummy_provider("echo"))
        options = StreamOptions(on_chunk=lambda chunk: seen.append(chunk.content))
        return await manager.stream_with_callbacks(create_completion_request("yo"), options)

    response = asyncio.run(scenario())
    assert response.content == "dummy:yo"
    assert "".join(seen) == "dummy:yo"


def test_configure_updates_execution_config() -> None:
    manager = create_manager()
    updated = manager.configure(timeout_ms=1234, enable_fallback=False)

    assert updated.timeout_ms == 1234
    assert manager.config is updated
    assert manager.execution.config.enable_fallback is False
    for bad in ({"timeout_ms": 0}, {"timeout": 500}):
        with pytest.raises(LLMError) as excinfo:
            manager.configure(**bad)
        assert excinfo.value.code is ErrorKind.INVALID_REQUEST
        assert excinfo.value.provider == "manager"
    assert manager.config is updated


def test_helpers_summarise_providers() -> None:
    manager = create_manager()

    async def scenario() -> bool:
        await manager.register_provider(create_dummy_provider("a", model="m-a"))
        await manager.register_provider(create_dummy_provider("b"))
        manager.set_fallback_provider("b")
        return await has_available_providers(manager)

    assert asyncio.run(scenario()) is True
    summary = provider_summary(manager)
    assert summary["state"] == "has-active-provider"
    assert summary["active"] == "a"
    assert summary["fallback"] == "b"
    assert summary["providers"][0] == {"id": "a", "name": "Dummy", "type": "local", "model": "m-a"}
    assert asyncio.run(has_available_providers(create_manager())) is False


def test_create_chat_request_stamps_messages() -> None:
    request = create_chat_request([{"role": "user", "content": "hi"}], model="m1", temperature=0.2)
    assert request.model == "m1"
    assert request.messages[0].timestamp is not None
    assert create_completion_request("x").messages[0].role == "user"
