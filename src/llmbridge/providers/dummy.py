import logging
import time
from typing import Any, AsyncIterator, List, Optional

from ..types import (
    CompletionOptions,
    LLMRequest,
    LLMResponse,
    ModelInfo,
    ProviderConfig,
    ProviderFeatures,
    ProviderSettings,
    ProviderStatus,
    StreamChunk,
    StreamOptions,
    TokenUsage,
)
from .base import ProviderCore, drain_stream, validate_request

logger = logging.getLogger(__name__)

__all__ = ["DummyProvider", "create_dummy_provider"]


class DummyProvider:
    """In-process echo backend for dry runs and tests."""

    def __init__(self, config: ProviderConfig) -> None:
        self.core = ProviderCore(config)

    @property
    def id(self) -> str:
        return self.core.id

    @property
    def name(self) -> str:
        return self.core.config.name

    @property
    def type(self) -> str:
        return self.core.config.type

    @property
    def config(self) -> ProviderConfig:
        return self.core.config

    @property
    def settings(self) -> ProviderSettings:
        return self.core.settings

    @property
    def default_model(self) -> str:
        return self.core.default_model

    def configure(self, **changes: Any) -> ProviderSettings:
        return self.core.configure(**changes)

    def supports_feature(self, feature: str) -> bool:
        return self.core.supports_feature(feature)

    async def initialize(self) -> None:
        self.core.initialized = True

    async def cleanup(self) -> None:
        self.core.initialized = False

    def _reply(self, request: LLMRequest) -> str:
        last_user = next((m.content for m in reversed(request.messages) if m.role == "user"), "ping")
        return f"dummy:{last_user}"

    @staticmethod
    def _usage(request: LLMRequest, reply: str) -> TokenUsage:
        prompt = sum(len(m.content.split()) for m in request.messages)
        return TokenUsage.from_counts(prompt, len(reply.split()))

    async def chat(self, request: LLMRequest) -> LLMResponse:
        validate_request(request, self.id)
        reply = self._reply(request)
        return LLMResponse(
            content=reply,
            model=request.model or self.default_model,
            usage=self._usage(request, reply),
            finish_reason="stop",
        )

    async def complete(self, prompt: str, options: Optional[CompletionOptions] = None) -> str:
        request = LLMRequest(messages=[{"role": "user", "content": prompt, "timestamp": time.time()}])
        return (await self.chat(request)).content

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]:
        validate_request(request, self.id)
        reply = self._reply(request)
        words = reply.split(" ")
        for index, word in enumerate(words):
            yield StreamChunk(content=word if index == 0 else f" {word}")
        yield StreamChunk(
            content="",
            done=True,
            metadata={
                "finish_reason": "stop",
                "model": request.model or self.default_model,
                "usage": self._usage(request, reply).model_dump(exclude_none=True),
            },
        )

    async def stream_with_callbacks(self, request: LLMRequest, options: StreamOptions) -> LLMResponse:
        return await drain_stream(self, request, options)

    async def is_available(self) -> bool:
        return True

    async def get_status(self) -> ProviderStatus:
        return ProviderStatus(available=True, connected=True, latency=0.0, models=[self.default_model])

    async def get_models(self) -> List[ModelInfo]:
        return [
            ModelInfo(
                id=self.default_model,
                name=self.default_model,
                type=self.config.type,
                provider=self.id,
            )
        ]


def create_dummy_provider(provider_id: str = "dummy", *, model: str = "dummy", name: str = "Dummy") -> DummyProvider:
    config = ProviderConfig(
        id=provider_id,
        name=name,
        type="local",
        default_model=model,
        supported_features=ProviderFeatures(streaming=True),
    )
    return DummyProvider(config)
