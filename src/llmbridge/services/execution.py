import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import ManagerConfig
from ..errors import ErrorKind, LLMError, as_llm_error
from ..network.retry import DEFAULT_RETRY_POLICY, retry_operation
from ..network.transport import run_with_timeout
from ..providers.base import LLMProvider
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[LLMProvider], Awaitable[T]]


class ExecutionService:
    """Runs single-shot operations on the active provider, with timeout and fallback."""

    def __init__(self, registry: ProviderRegistry, config: Optional[ManagerConfig] = None) -> None:
        self.registry = registry
        self.config = config or ManagerConfig()

    async def _attempt(
        self, provider: LLMProvider, operation: Operation[T], label: str, timeout_tag: str
    ) -> T:
        # deadline errors carry the active provider's id, even on the fallback attempt
        try:
            return await run_with_timeout(operation(provider), self.config.timeout_ms, timeout_tag)
        except Exception as exc:
            error = as_llm_error(exc, provider.id, prefix=f"{label} failed")
            logger.error(
                "operation failed provider=%s operation=%s code=%s error=%s",
                provider.id,
                label,
                error.code.value,
                error.message,
            )
            if error is exc:
                raise
            raise error from exc

    def _fallback_for(self, active: LLMProvider, error: LLMError) -> Optional[LLMProvider]:
        if not self.config.enable_fallback or error.code is ErrorKind.INVALID_REQUEST:
            return None
        fallback = self.registry.fallback_provider()
        if fallback is None or fallback.id == active.id:
            return None
        return fallback

    async def run(self, operation: Operation[T], label: str = "operation") -> T:
        """Run ``operation`` on the active provider, then once on the fallback.

        When both fail, the active provider's error is raised.
        """
        active = self.registry.get_active()
        try:
            return await self._attempt(active, operation, label, active.id)
        except LLMError as primary:
            fallback = self._fallback_for(active, primary)
            if fallback is None:
                raise
            logger.warning(
                "falling back provider=%s fallback=%s operation=%s",
                active.id,
                fallback.id,
                label,
            )
            try:
                return await self._attempt(fallback, operation, label, active.id)
            except LLMError:
                raise primary

    async def run_with_retry(
        self, operation: Operation[T], label: str = "operation", max_retries: Optional[int] = None
    ) -> T:
        retries = self.config.retry_attempts if max_retries is None else max_retries
        policy = replace(DEFAULT_RETRY_POLICY, max_retries=retries)
        return await retry_operation(lambda: self.run(operation, label), policy, label=label)


__all__ = ["ExecutionService", "Operation"]
