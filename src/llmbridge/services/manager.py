import logging
from contextlib import aclosing
from dataclasses import replace
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional

from pydantic import ValidationError

from ..config import LoadedConfig, ManagerConfig
from ..errors import ErrorKind, LLMError
from ..network.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_stream
from ..providers import build_provider
from ..providers.base import LLMProvider
from ..types import (
    CompletionOptions,
    LLMRequest,
    LLMResponse,
    ModelInfo,
    ProviderStatus,
    StreamChunk,
    StreamOptions,
)
from .execution import ExecutionService
from .registry import ProviderRegistry
from .streaming import StreamingService

logger = logging.getLogger(__name__)


class ManagerState(str, Enum):
    UNCONFIGURED = "unconfigured"
    HAS_PROVIDERS = "has-providers"
    HAS_ACTIVE_PROVIDER = "has-active-provider"


class Manager:
    """Entry point for the application: providers, configuration and requests.

    One instance is created per process with :func:`create_manager` and passed
    to whatever needs it.
    """

    def __init__(self, config: Optional[ManagerConfig] = None) -> None:
        self._config = config or ManagerConfig()
        self.registry = ProviderRegistry()
        self.execution = ExecutionService(self.registry, self._config)
        self.streaming = StreamingService(self.registry)

    @property
    def config(self) -> ManagerConfig:
        return self._config

    @property
    def state(self) -> ManagerState:
        if not self.registry.providers:
            return ManagerState.UNCONFIGURED
        active_id = self.registry.active_provider_id
        if active_id is None or not self.registry.has_provider(active_id):
            return ManagerState.HAS_PROVIDERS
        return ManagerState.HAS_ACTIVE_PROVIDER

    def configure(self, **changes: Any) -> ManagerConfig:
        try:
            self._config = self._config.configure(**changes)
        except ValidationError as exc:
            raise LLMError(
                f"Invalid manager configuration: {exc}",
                ErrorKind.INVALID_REQUEST,
                "manager",
                retryable=False,
                original_error=exc,
            ) from exc
        self.execution.config = self._config
        logger.info(
            "manager configured timeout_ms=%d retry_attempts=%d enable_fallback=%s",
            self._config.timeout_ms,
            self._config.retry_attempts,
            self._config.enable_fallback,
        )
        return self._config

    def _retry_policy(self) -> RetryPolicy:
        return replace(DEFAULT_RETRY_POLICY, max_retries=self._config.retry_attempts)

    def _require_active(self) -> LLMProvider:
        if self.state is not ManagerState.HAS_ACTIVE_PROVIDER:
            raise LLMError("No active provider available", ErrorKind.UNKNOWN, "manager", retryable=False)
        return self.registry.get_active()

    async def register_provider(self, provider: LLMProvider) -> None:
        await self.registry.register(provider)

    async def unregister_provider(self, provider_id: str) -> None:
        await self.registry.unregister(provider_id)

    def set_active_provider(self, provider_id: str) -> None:
        self.registry.set_active(provider_id)
        logger.info("active provider set provider=%s", provider_id)

    def set_fallback_provider(self, provider_id: str) -> None:
        self.registry.set_fallback(provider_id)
        logger.info("fallback provider set provider=%s", provider_id)

    def get_active_provider(self) -> Optional[LLMProvider]:
        if self.state is not ManagerState.HAS_ACTIVE_PROVIDER:
            return None
        return self.registry.get_active()

    def get_provider(self, provider_id: str) -> Optional[LLMProvider]:
        return self.registry.get_provider(provider_id)

    def all_providers(self) -> List[LLMProvider]:
        return self.registry.all_providers()

    def provider_ids(self) -> List[str]:
        return self.registry.provider_ids()

    async def get_all_provider_statuses(self) -> Dict[str, ProviderStatus]:
        return await self.registry.all_statuses()

    async def get_all_models(self) -> Dict[str, List[ModelInfo]]:
        return await self.registry.all_models()

    async def chat(self, request: LLMRequest) -> LLMResponse:
        self._require_active()
        return await self.execution.run_with_retry(lambda provider: provider.chat(request), "chat")

    async def complete(self, prompt: str, options: Optional[CompletionOptions] = None) -> str:
        self._require_active()
        return await self.execution.run_with_retry(
            lambda provider: provider.complete(prompt, options), "complete"
        )

    async def stream(self, request: LLMRequest) -> AsyncGenerator[StreamChunk, None]:
        self._require_active()
        source = retry_stream(lambda: self.streaming.stream(request), self._retry_policy(), label="stream")
        async with aclosing(source) as chunks:
            async for chunk in chunks:
                yield chunk

    async def stream_with_callbacks(self, request: LLMRequest, options: StreamOptions) -> LLMResponse:
        self._require_active()
        return await self.streaming.stream_with_callbacks(request, options)

    async def cleanup(self) -> None:
        await self.registry.cleanup()
        logger.info("manager cleaned up")


def create_manager(config: Optional[ManagerConfig] = None) -> Manager:
    return Manager(config)


async def bootstrap_manager(loaded: LoadedConfig) -> Manager:
    """Build a manager from loaded configuration and register every provider.

    Providers that fail to initialise are logged and left out.
    """
    manager = create_manager(loaded.manager)
    for name, defn in loaded.providers.items():
        try:
            await manager.register_provider(build_provider(defn))
        except LLMError as exc:
            logger.error("skipping provider provider=%s code=%s error=%s", name, exc.code.value, exc.message)
    default_id = loaded.manager.default_provider
    if default_id and manager.registry.has_provider(default_id):
        manager.set_active_provider(default_id)
    fallback_id = loaded.manager.fallback_provider
    if fallback_id and manager.registry.has_provider(fallback_id):
        manager.set_fallback_provider(fallback_id)
    return manager


__all__ = ["Manager", "ManagerState", "bootstrap_manager", "create_manager"]
