import asyncio
import logging
import time
from typing import Dict, List, Optional

from ..errors import ErrorKind, LLMError
from ..providers.base import LLMProvider
from ..types import ModelInfo, ProviderStatus

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registered providers plus the active and fallback pointers.

    The map and both pointers are only mutated by methods on this class.
    """

    def __init__(self) -> None:
        self.providers: Dict[str, LLMProvider] = {}
        self._active_id: Optional[str] = None
        self._fallback_id: Optional[str] = None

    @property
    def active_provider_id(self) -> Optional[str]:
        return self._active_id

    @property
    def fallback_provider_id(self) -> Optional[str]:
        return self._fallback_id

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self.providers

    def provider_ids(self) -> List[str]:
        return list(self.providers)

    def all_providers(self) -> List[LLMProvider]:
        return list(self.providers.values())

    def get_provider(self, provider_id: str) -> Optional[LLMProvider]:
        return self.providers.get(provider_id)

    def _unknown(self, message: str) -> LLMError:
        return LLMError(message, ErrorKind.UNKNOWN, "registry", retryable=False)

    async def register(self, provider: LLMProvider) -> None:
        try:
            await provider.initialize()
        except Exception as exc:
            logger.error("provider registration failed provider=%s error=%s", provider.id, exc)
            if isinstance(exc, LLMError) and exc.code is ErrorKind.CONNECTION_FAILED:
                raise
            raise LLMError(
                f"Failed to initialize provider {provider.id}: {exc}",
                ErrorKind.CONNECTION_FAILED,
                provider.id,
                retryable=True,
                original_error=exc,
            ) from exc
        self.providers[provider.id] = provider
        if self._active_id is None:
            self._active_id = provider.id
        logger.info("provider registered provider=%s active=%s", provider.id, self._active_id)

    async def unregister(self, provider_id: str) -> None:
        provider = self.providers.get(provider_id)
        if provider is None:
            raise self._unknown(f"Provider {provider_id} is not registered")
        try:
            await provider.cleanup()
        except Exception as exc:
            logger.error("provider cleanup failed provider=%s error=%s", provider_id, exc)
        del self.providers[provider_id]
        if self._active_id == provider_id:
            self._active_id = next(iter(self.providers), None)
        if self._fallback_id == provider_id:
            self._fallback_id = None
        logger.info("provider unregistered provider=%s active=%s", provider_id, self._active_id)

    def set_active(self, provider_id: str) -> None:
        if provider_id not in self.providers:
            raise self._unknown(f"Provider {provider_id} is not registered")
        self._active_id = provider_id

    def set_fallback(self, provider_id: str) -> None:
        if provider_id not in self.providers:
            raise self._unknown(f"Provider {provider_id} is not registered")
        self._fallback_id = provider_id

    def get_active(self) -> LLMProvider:
        if not self.providers:
            raise self._unknown("No providers registered")
        provider = self.providers.get(self._active_id) if self._active_id else None
        if provider is None:
            raise self._unknown("Active provider is not registered")
        return provider

    def fallback_provider(self) -> Optional[LLMProvider]:
        if self._fallback_id is None:
            return None
        return self.providers.get(self._fallback_id)

    async def _status_of(self, provider: LLMProvider) -> ProviderStatus:
        try:
            return await provider.get_status()
        except Exception as exc:
            logger.error("status check failed provider=%s error=%s", provider.id, exc)
            return ProviderStatus(
                available=False,
                connected=False,
                error=str(exc) or type(exc).__name__,
                last_checked=time.time(),
            )

    async def _models_of(self, provider: LLMProvider) -> List[ModelInfo]:
        try:
            return await provider.get_models()
        except Exception as exc:
            logger.error("model listing failed provider=%s error=%s", provider.id, exc)
            return []

    async def all_statuses(self) -> Dict[str, ProviderStatus]:
        providers = list(self.providers.values())
        results = await asyncio.gather(*(self._status_of(p) for p in providers))
        return {p.id: status for p, status in zip(providers, results)}

    async def all_models(self) -> Dict[str, List[ModelInfo]]:
        providers = list(self.providers.values())
        results = await asyncio.gather(*(self._models_of(p) for p in providers))
        return {p.id: models for p, models in zip(providers, results)}

    async def cleanup(self) -> None:
        for provider_id in list(self.providers):
            await self.unregister(provider_id)
        self._active_id = None
        self._fallback_id = None


__all__ = ["ProviderRegistry"]
