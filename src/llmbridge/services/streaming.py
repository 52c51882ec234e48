import logging
from contextlib import aclosing
from typing import AsyncGenerator

from ..errors import as_llm_error
from ..types import LLMRequest, LLMResponse, StreamChunk, StreamOptions
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)


class StreamingService:
    """Streams from the active provider. Failures never switch to the fallback."""

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    async def stream(self, request: LLMRequest) -> AsyncGenerator[StreamChunk, None]:
        provider = self.registry.get_active()
        try:
            async with aclosing(provider.stream(request)) as chunks:
                async for chunk in chunks:
                    yield chunk
        except Exception as exc:
            error = as_llm_error(exc, provider.id, prefix="Streaming failed")
            logger.error(
                "stream failed provider=%s operation=stream code=%s error=%s",
                provider.id,
                error.code.value,
                error.message,
            )
            if error is exc:
                raise
            raise error from exc

    async def stream_with_callbacks(self, request: LLMRequest, options: StreamOptions) -> LLMResponse:
        provider = self.registry.get_active()
        logger.debug("streaming with callbacks provider=%s", provider.id)
        return await provider.stream_with_callbacks(request, options)


__all__ = ["StreamingService"]
