import asyncio
import json
from typing import Any, AsyncIterator, Callable

import httpx
import pytest

from llmbridge.errors import ErrorKind, LLMError
from llmbridge.network.transport import HttpTransport, TimeoutController, run_with_timeout


class _TrackedStream(httpx.AsyncByteStream):
    def __init__(self, parts: list[bytes]) -> None:
        self._parts = parts
        self.closed = 0

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for part in self._parts:
            await asyncio.sleep(0)
            yield part

    async def aclose(self) -> None:
        self.closed += 1


def _transport(handler: Callable[[httpx.Request], httpx.Response]) -> HttpTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport({"X-Default": "1"}, client=client)


@pytest.mark.parametrize(
    ("status", "code", "retryable"),
    [
        (401, ErrorKind.AUTH_FAILED, False),
        (404, ErrorKind.MODEL_NOT_FOUND, False),
        (429, ErrorKind.RATE_LIMITED, True),
        (500, ErrorKind.CONNECTION_FAILED, True),
        (503, ErrorKind.CONNECTION_FAILED, True),
        (400, ErrorKind.UNKNOWN, False),
    ],
)
def test_request_maps_status(status: int, code: ErrorKind, retryable: bool) -> None:
    transport = _transport(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(LLMError) as excinfo:
        asyncio.run(transport.request("GET", "http://backend/x", provider_id="p1"))

    assert excinfo.value.code is code
    assert excinfo.value.retryable is retryable
    assert excinfo.value.provider == "p1"
    assert "nope" in excinfo.value.message


def test_request_returns_json_and_merges_headers() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = dict(request.headers)
        seen["body"] = request.content
        return httpx.Response(200, json={"ok": True})

    transport = _transport(handler)
    result = asyncio.run(
        transport.request("POST", "http://backend/x", json_body={"a": 1}, headers={"X-Extra": "2"})
    )

    assert result == {"ok": True}
    assert seen["headers"]["x-default"] == "1"
    assert seen["headers"]["x-extra"] == "2"
    assert json.loads(seen["body"]) == {"a": 1}


def test_request_invalid_json_is_unknown() -> None:
    transport = _transport(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(LLMError) as excinfo:
        asyncio.run(transport.request("GET", "http://backend/x"))
    assert excinfo.value.code is ErrorKind.UNKNOWN
    assert excinfo.value.retryable is False


def test_request_network_failure_is_retryable_connection_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(LLMError) as excinfo:
        asyncio.run(_transport(handler).request("GET", "http://backend/x"))
    assert excinfo.value.code is ErrorKind.CONNECTION_FAILED
    assert excinfo.value.retryable is True


def test_request_timeout_is_retryable_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(LLMError) as excinfo:
        asyncio.run(_transport(handler).request("GET", "http://backend/x"))
    assert excinfo.value.code is ErrorKind.TIMEOUT
    assert excinfo.value.retryable is True


def test_stream_yields_text_in_order() -> None:
    body = _TrackedStream([b"one ", b"two ", b"three"])
    transport = _transport(lambda request: httpx.Response(200, stream=body))

    async def collect() -> list[str]:
        return [text async for text in transport.stream("POST", "http://backend/s")]

    assert "".join(asyncio.run(collect())) == "one two three"
    assert body.closed == 1


def test_stream_releases_response_when_abandoned() -> None:
    body = _TrackedStream([b"a", b"b", b"c", b"d"])
    transport = _transport(lambda request: httpx.Response(200, stream=body))

    async def take_one() -> str:
        stream = transport.stream("POST", "http://backend/s")
        first = await stream.__anext__()
        await stream.aclose()
        return first

    assert asyncio.run(take_one()) == "a"
    assert body.closed == 1


def test_stream_error_status() -> None:
    transport = _transport(lambda request: httpx.Response(429, text="slow down"))

    async def consume() -> None:
        async for _ in transport.stream("POST", "http://backend/s", provider_id="p2"):
            pass

    with pytest.raises(LLMError) as excinfo:
        asyncio.run(consume())
    assert excinfo.value.code is ErrorKind.RATE_LIMITED
    assert excinfo.value.retryable is True


def test_run_with_timeout_raises_non_retryable_timeout() -> None:
    with pytest.raises(LLMError) as excinfo:
        asyncio.run(run_with_timeout(asyncio.sleep(1), 10, "slow"))
    assert excinfo.value.code is ErrorKind.TIMEOUT
    assert excinfo.value.retryable is False
    assert excinfo.value.provider == "slow"


def test_timeout_controller_sets_signal() -> None:
    async def scenario() -> tuple[bool, bool]:
        fired = TimeoutController(10)
        cancelled = TimeoutController(10)
        cancelled.cancel()
        await asyncio.sleep(0.05)
        return fired.expired, cancelled.expired

    assert asyncio.run(scenario()) == (True, False)


def test_timeout_controller_cancels_pending_operation() -> None:
    cancelled: list[bool] = []

    async def stalled() -> str:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return "late"

    async def scenario() -> LLMError:
        controller = TimeoutController(20, "slow")
        assert await controller.run(asyncio.sleep(0, result="quick")) == "quick"
        with pytest.raises(LLMError) as excinfo:
            await controller.run(stalled())
        assert controller.expired
        assert controller.remaining() == 0.0
        return excinfo.value

    error = asyncio.run(scenario())
    assert cancelled == [True]
    assert error.code is ErrorKind.TIMEOUT
    assert error.provider == "slow"
    assert error.retryable is False
