from __future__ import annotations

import json
import logging
import os
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from ..errors import ErrorKind, LLMError
from ..network.buffers import EventBuffer
from ..network.parsers import SSEEvent
from ..network.transport import HttpTransport
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
from .base import (
    ProviderCore,
    build_messages,
    drain_stream,
    extract_content,
    normalize_finish_reason,
    validate_request,
)

logger = logging.getLogger(__name__)

__all__ = ["OpenAICompatProvider", "create_openai_provider", "api_base_url"]

AVAILABILITY_TIMEOUT_MS = 5000
STATUS_MODEL_SAMPLE = 5


def _is_version_segment(segment: str) -> bool:
    lowered = segment.lower()
    if not lowered.startswith("v"):
        return False
    suffix = lowered[1:]
    return bool(suffix) and suffix[0].isdigit()


def api_base_url(base_url: str) -> str:
    """Normalise ``base_url`` so it ends with a version segment (``/v1`` by default)."""
    parsed = urlparse(base_url.rstrip("/"))
    segments = [segment for segment in parsed.path.split("/") if segment]
    if segments and segments[-1] in {"completions", "chat"}:
        segments = [s for s in segments if s not in {"chat", "completions"}]
    if not segments or not _is_version_segment(segments[-1]):
        segments.append("v1")
    return urlunparse(parsed._replace(path="/" + "/".join(segments)))


async def _iter_events(fragments: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    buffer = EventBuffer()
    async with aclosing(fragments) as source:
        async for fragment in source:
            for event in buffer.feed(fragment):
                yield event
    for event in buffer.finish():
        yield event


class OpenAICompatProvider:
    """Provider for OpenAI-compatible chat completion APIs (SSE streaming)."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        base_url: Optional[str] = None,
        api_key_env: Optional[str] = None,
        transport: Optional[HttpTransport] = None,
    ) -> None:
        self.core = ProviderCore(config)
        self.api_key_env = api_key_env
        self.base_url = api_base_url(base_url or self.core.settings.endpoint or "https://api.openai.com")
        self._owns_transport = transport is None
        self.transport = transport or HttpTransport(timeout_ms=self.core.settings.timeout or 30000)
        self._models: List[ModelInfo] = []

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
        settings = self.core.configure(**changes)
        if settings.endpoint:
            self.base_url = api_base_url(settings.endpoint)
        if not self.core.initialized:
            self._models = []
        return settings

    def supports_feature(self, feature: str) -> bool:
        return self.core.supports_feature(feature)

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        headers.update(self.settings.custom_headers)
        key = self.settings.api_key
        if not key and self.api_key_env:
            key = os.environ.get(self.api_key_env, "")
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    async def _fetch_models(self, timeout_ms: Optional[int] = None) -> List[ModelInfo]:
        data = await self.transport.request(
            "GET",
            f"{self.base_url}/models",
            provider_id=self.id,
            headers=self._headers(),
            timeout_ms=timeout_ms,
        )
        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise self.core.create_error(
                "Model listing has no 'data' list", ErrorKind.CONNECTION_FAILED, True
            )
        return [
            ModelInfo(
                id=str(entry["id"]),
                name=str(entry["id"]),
                type="api",
                provider=self.id,
                family=entry.get("owned_by"),
                endpoint=self.base_url,
            )
            for entry in entries
            if isinstance(entry, dict) and entry.get("id")
        ]

    async def initialize(self) -> None:
        try:
            self._models = await self._fetch_models()
        except Exception as exc:
            raise self.core.create_error(
                f"Failed to initialize provider: {exc}",
                ErrorKind.CONNECTION_FAILED,
                True,
                exc,
            ) from exc
        logger.info("provider initialized provider=%s base_url=%s", self.id, self.base_url)

    async def cleanup(self) -> None:
        self._models = []
        self.core.initialized = False
        if self._owns_transport:
            await self.transport.aclose()
        logger.info("provider cleaned up provider=%s", self.id)

    def _build_payload(self, request: LLMRequest, *, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model or self.default_model,
            "messages": build_messages(request),
            "stream": stream,
        }
        temperature = request.temperature if request.temperature is not None else self.settings.temperature
        max_tokens = request.max_tokens if request.max_tokens is not None else self.settings.max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _usage(raw: Any) -> Optional[TokenUsage]:
        if not isinstance(raw, dict):
            return None
        return TokenUsage.from_counts(raw.get("prompt_tokens"), raw.get("completion_tokens"))

    def _raise_payload_error(self, error: Any) -> None:
        message = error.get("message") if isinstance(error, dict) else str(error)
        code = ErrorKind.UNKNOWN
        if isinstance(error, dict):
            kind = str(error.get("code") or error.get("type") or "")
            if "content_filter" in kind:
                code = ErrorKind.CONTENT_FILTERED
            elif "quota" in kind:
                code = ErrorKind.QUOTA_EXCEEDED
            elif "model_not_found" in kind:
                code = ErrorKind.MODEL_NOT_FOUND
        raise self.core.create_error(f"Provider error: {message}", code)

    async def chat(self, request: LLMRequest) -> LLMResponse:
        validate_request(request, self.id)
        await self.core.ensure_initialized(self.initialize)
        payload = self._build_payload(request, stream=False)
        started = time.monotonic()
        data = await self.transport.request(
            "POST",
            f"{self.base_url}/chat/completions",
            provider_id=self.id,
            json_body=payload,
            headers=self._headers(),
        )
        if isinstance(data, dict) and data.get("error"):
            self._raise_payload_error(data["error"])
        content = extract_content(data)
        if content is None:
            raise self.core.create_error("Malformed chat completion: no message content found")
        choices = data.get("choices") if isinstance(data, dict) else None
        first = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
        return LLMResponse(
            content=content,
            model=data.get("model") or payload["model"],
            usage=self._usage(data.get("usage")),
            finish_reason=normalize_finish_reason(first.get("finish_reason")) or "stop",
            metadata={"processing_time": (time.monotonic() - started) * 1000},
        )

    async def complete(self, prompt: str, options: Optional[CompletionOptions] = None) -> str:
        options = options or CompletionOptions()
        request = LLMRequest(
            messages=[{"role": "user", "content": prompt, "timestamp": time.time()}],
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            top_p=options.top_p,
        )
        return (await self.chat(request)).content

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]:
        validate_request(request, self.id)
        await self.core.ensure_initialized(self.initialize)
        payload = self._build_payload(request, stream=True)
        model = payload["model"]
        started = time.monotonic()
        finish_reason: Optional[str] = None
        usage: Optional[TokenUsage] = None
        source = self.transport.stream(
            "POST",
            f"{self.base_url}/chat/completions",
            provider_id=self.id,
            json_body=payload,
            headers=self._headers(),
        )
        async with aclosing(_iter_events(source)) as stream_events:
            async for event in stream_events:
                if event.data.strip() == "[DONE]":
                    break
                try:
                    record = json.loads(event.data)
                except json.JSONDecodeError as exc:
                    logger.warning("dropping malformed event provider=%s error=%s", self.id, exc)
                    continue
                if not isinstance(record, dict):
                    continue
                if record.get("error"):
                    self._raise_payload_error(record["error"])
                model = record.get("model") or model
                usage = self._usage(record.get("usage")) or usage
                choices = record.get("choices")
                if not isinstance(choices, list) or not choices:
                    continue
                choice = choices[0] if isinstance(choices[0], dict) else {}
                finish_reason = normalize_finish_reason(choice.get("finish_reason")) or finish_reason
                delta = choice.get("delta")
                content = delta.get("content") if isinstance(delta, dict) else None
                if isinstance(content, str) and content:
                    yield StreamChunk(content=content, done=False)
        metadata: Dict[str, Any] = {
            "finish_reason": finish_reason or "stop",
            "model": model,
            "processing_time": (time.monotonic() - started) * 1000,
        }
        if usage is not None:
            metadata["usage"] = usage.model_dump(exclude_none=True)
        yield StreamChunk(content="", done=True, metadata=metadata)

    async def stream_with_callbacks(self, request: LLMRequest, options: StreamOptions) -> LLMResponse:
        return await drain_stream(self, request, options)

    async def is_available(self) -> bool:
        try:
            await self.transport.request(
                "GET",
                f"{self.base_url}/models",
                provider_id=self.id,
                headers=self._headers(),
                timeout_ms=AVAILABILITY_TIMEOUT_MS,
            )
        except Exception as exc:
            logger.debug("availability check failed provider=%s error=%s", self.id, exc)
            return False
        return True

    async def get_status(self) -> ProviderStatus:
        last_checked = time.time()
        started = time.monotonic()
        available = await self.is_available()
        if not available:
            return ProviderStatus(
                available=False,
                connected=False,
                error="API endpoint not responding",
                last_checked=last_checked,
            )
        latency = (time.monotonic() - started) * 1000
        try:
            models = await self.get_models()
        except LLMError as exc:
            logger.warning("model listing failed during status provider=%s error=%s", self.id, exc)
            models = []
        return ProviderStatus(
            available=True,
            connected=True,
            last_checked=last_checked,
            latency=latency,
            models=[m.name for m in models[:STATUS_MODEL_SAMPLE]],
        )

    async def get_models(self) -> List[ModelInfo]:
        if not self._models:
            self._models = await self._fetch_models()
        return list(self._models)


def create_openai_provider(
    base_url: str = "https://api.openai.com",
    *,
    provider_id: str = "openai",
    name: str = "OpenAI-compatible API",
    default_model: str = "gpt-4o-mini",
    api_key_env: Optional[str] = "OPENAI_API_KEY",
    timeout_ms: int = 30000,
    transport: Optional[HttpTransport] = None,
) -> OpenAICompatProvider:
    config = ProviderConfig(
        id=provider_id,
        name=name,
        type="api",
        default_model=default_model,
        default_settings=ProviderSettings(endpoint=base_url, timeout=timeout_ms, retry_attempts=3),
        supported_features=ProviderFeatures(
            streaming=True,
            multiple_models=True,
            custom_endpoint=True,
            context_windows=[8192, 32768, 128000],
            function_calling=True,
            image_input=True,
            code_generation=True,
        ),
    )
    return OpenAICompatProvider(config, base_url=base_url, api_key_env=api_key_env, transport=transport)
