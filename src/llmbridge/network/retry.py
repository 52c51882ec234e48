import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from ..errors import LLMError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_is_retryable(error: BaseException) -> bool:
    if isinstance(error, LLMError):
        return error.retryable
    return True


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1000.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10000.0
    is_retryable: Callable[[BaseException], bool] = field(default=default_is_retryable)

    def delay_for(self, attempt: int) -> float:
        """Delay in milliseconds before retrying after the 0-indexed ``attempt``."""
        return min(self.base_delay * self.backoff_multiplier ** attempt, self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()


async def _backoff(policy: RetryPolicy, attempt: int, error: BaseException, label: str) -> None:
    delay = policy.delay_for(attempt)
    logger.warning(
        "%s attempt=%d/%d failed, retrying in %.0fms error=%s",
        label,
        attempt + 1,
        policy.max_retries + 1,
        delay,
        error,
    )
    await asyncio.sleep(delay / 1000.0)


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    label: str = "operation",
) -> T:
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_retries or not policy.is_retryable(exc):
                raise
            await _backoff(policy, attempt, exc, label)
            attempt += 1


async def retry_stream(
    open_stream: Callable[[], AsyncGenerator[T, None]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    label: str = "stream",
) -> AsyncGenerator[T, None]:
    """Re-open a stream until its first element arrives, then pass it through.

    Only failures raised before anything has been yielded are retried. Once the
    first element is delivered, later errors propagate unchanged.
    """
    attempt = 0
    while True:
        stream = open_stream()
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            await stream.aclose()
            return
        except Exception as exc:
            await stream.aclose()
            if attempt >= policy.max_retries or not policy.is_retryable(exc):
                raise
            await _backoff(policy, attempt, exc, label)
            attempt += 1
            continue
        except BaseException:
            await stream.aclose()
            raise
        break

    async with aclosing(stream):
        yield first
        async for item in stream:
            yield item


class RetryHandler:
    def __init__(self, policy: Optional[RetryPolicy] = None) -> None:
        self.policy = policy or DEFAULT_RETRY_POLICY

    async def execute(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        return await retry_operation(operation, self.policy, label=label)

    def execute_stream(
        self, open_stream: Callable[[], AsyncGenerator[T, None]], *, label: str = "stream"
    ) -> AsyncGenerator[T, None]:
        return retry_stream(open_stream, self.policy, label=label)

    def update_options(self, **changes: Any) -> None:
        self.policy = replace(self.policy, **changes)


__all__ = [
    "DEFAULT_RETRY_POLICY",
    "RetryHandler",
    "RetryPolicy",
    "default_is_retryable",
    "retry_operation",
    "retry_stream",
]
