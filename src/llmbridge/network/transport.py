import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, TypeVar

import httpx

from ..errors import ErrorKind, LLMError, error_from_httpx, error_from_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_MS = 30000


async def _error_message(response: httpx.Response) -> str:
    message = f"HTTP {response.status_code}: {response.reason_phrase}"
    try:
        await response.aread()
        body = response.text
    except httpx.HTTPError:
        body = ""
    if body:
        message = f"{message} - {body[:500]}"
    return message


class HttpTransport:
    """Thin wrapper over ``httpx.AsyncClient`` that speaks ``LLMError``.

    When no client is injected a short-lived ``AsyncClient`` is opened per call.
    """

    def __init__(
        self,
        default_headers: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.default_headers = dict(default_headers or {})
        self.timeout_ms = timeout_ms
        self._client = client

    @asynccontextmanager
    async def _client_scope(self, timeout_ms: Optional[int] = None) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        timeout = (timeout_ms or self.timeout_ms) / 1000.0
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client

    def _headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = dict(self.default_headers)
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        url: str,
        *,
        provider_id: str = "http-client",
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        try:
            async with self._client_scope(timeout_ms) as client:
                kwargs: Dict[str, Any] = {"headers": self._headers(headers)}
                if json_body is not None:
                    kwargs["json"] = json_body
                if timeout_ms is not None:
                    kwargs["timeout"] = timeout_ms / 1000.0
                response = await client.request(method, url, **kwargs)
                if not response.is_success:
                    raise error_from_status(
                        response.status_code, await _error_message(response), provider_id
                    )
                try:
                    return response.json()
                except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                    raise LLMError(
                        f"Invalid JSON in response from {url}: {exc}",
                        ErrorKind.UNKNOWN,
                        provider_id,
                        retryable=False,
                        original_error=exc,
                    ) from exc
        except httpx.HTTPError as exc:
            raise error_from_httpx(exc, provider_id) from exc

    async def stream(
        self,
        method: str,
        url: str,
        *,
        provider_id: str = "http-client",
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[str]:
        """Yield decoded body text as it arrives.

        The response is closed whenever this generator exits, including when
        the consumer calls ``aclose()`` before the body is exhausted.
        """
        kwargs: Dict[str, Any] = {"headers": self._headers(headers)}
        if json_body is not None:
            kwargs["json"] = json_body
        try:
            async with self._client_scope() as client:
                async with client.stream(method, url, **kwargs) as response:
                    if not response.is_success:
                        raise error_from_status(
                            response.status_code, await _error_message(response), provider_id
                        )
                    try:
                        async for text in response.aiter_text():
                            if text:
                                yield text
                    except httpx.HTTPError as exc:
                        raise LLMError(
                            f"Stream reading failed: {exc}",
                            ErrorKind.CONNECTION_FAILED,
                            provider_id,
                            retryable=True,
                            original_error=exc,
                        ) from exc
        except httpx.HTTPError as exc:
            raise error_from_httpx(exc, provider_id, action="Network request") from exc

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class TimeoutController:
    """Deadline of ``timeout_ms`` shared by every await passed to :meth:`run`.

    When the deadline passes, ``signal`` is set and the operation currently
    awaited through :meth:`run` is cancelled with a TIMEOUT error. ``cancel()``
    disarms the deadline.
    """

    def __init__(self, timeout_ms: float, provider_id: str = "timeout") -> None:
        self.timeout_ms = timeout_ms
        self.provider_id = provider_id
        self.signal = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self._deadline = self._loop.time() + timeout_ms / 1000.0
        self._handle: Optional[asyncio.TimerHandle] = self._loop.call_later(
            timeout_ms / 1000.0, self.signal.set
        )

    @property
    def expired(self) -> bool:
        return self.signal.is_set()

    def remaining(self) -> float:
        """Seconds left before the deadline, never negative."""
        if self.expired:
            return 0.0
        return max(0.0, self._deadline - self._loop.time())

    def _timeout_error(self) -> LLMError:
        return LLMError(
            f"Operation timed out after {self.timeout_ms:g}ms",
            ErrorKind.TIMEOUT,
            self.provider_id,
            retryable=False,
        )

    async def run(self, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.remaining())
        except asyncio.TimeoutError as exc:
            self.signal.set()
            raise self._timeout_error() from exc

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


def create_timeout_controller(timeout_ms: float, provider_id: str = "timeout") -> TimeoutController:
    return TimeoutController(timeout_ms, provider_id)


async def run_with_timeout(operation: Awaitable[T], timeout_ms: float, provider_id: str) -> T:
    try:
        return await asyncio.wait_for(operation, timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        raise LLMError(
            f"Operation timed out after {timeout_ms:g}ms",
            ErrorKind.TIMEOUT,
            provider_id,
            retryable=False,
        ) from exc


__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "HttpTransport",
    "TimeoutController",
    "create_timeout_controller",
    "run_with_timeout",
]
