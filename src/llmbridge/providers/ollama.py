from __future__ import annotations

import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from ..errors import ErrorKind, LLMError
from ..network.buffers import LineBuffer
from ..network.parsers import parse_line_records
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

__all__ = [
    "OllamaClient",
    "OllamaProvider",
    "create_ollama_provider",
    "extract_context_length",
    "model_info_from_tag",
]

AVAILABILITY_TIMEOUT_MS = 5000
STATUS_MODEL_SAMPLE = 5


def extract_context_length(parameter_size: str) -> int:
    size = parameter_size.upper()
    if "70B" in size or "30B" in size or "34B" in size:
        return 8192
    if "13B" in size or "7B" in size:
        return 4096
    return 2048


def model_info_from_tag(tag: Dict[str, Any], base_url: str, provider_id: str) -> ModelInfo:
    details = tag.get("details") if isinstance(tag.get("details"), dict) else {}
    parameter_size = details.get("parameter_size") or ""
    name = str(tag.get("name") or tag.get("model") or "")
    return ModelInfo(
        id=name,
        name=name,
        type="local",
        provider=provider_id,
        family=details.get("family") or details.get("format"),
        parameter_size=parameter_size or None,
        context_length=extract_context_length(parameter_size),
        size=tag.get("size") if isinstance(tag.get("size"), int) else None,
        modified_at=tag.get("modified_at"),
        endpoint=base_url,
    )


def _ns_to_ms(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)) and value > 0:
        return value / 1_000_000
    return None


class OllamaClient:
    """HTTP calls against one Ollama server."""

    def __init__(self, base_url: str, transport: HttpTransport, provider_id: str = "ollama") -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.provider_id = provider_id

    async def is_available(self) -> bool:
        try:
            await self.transport.request(
                "GET",
                f"{self.base_url}/api/tags",
                provider_id=self.provider_id,
                timeout_ms=AVAILABILITY_TIMEOUT_MS,
            )
        except Exception as exc:
            logger.debug("availability check failed provider=%s error=%s", self.provider_id, exc)
            return False
        return True

    async def fetch_models(self) -> List[ModelInfo]:
        try:
            data = await self.transport.request(
                "GET", f"{self.base_url}/api/tags", provider_id=self.provider_id
            )
        except LLMError as exc:
            raise LLMError(
                f"Failed to fetch Ollama models: {exc.message}",
                ErrorKind.CONNECTION_FAILED,
                self.provider_id,
                retryable=True,
                original_error=exc,
            ) from exc
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise LLMError(
                "Failed to fetch Ollama models: response has no 'models' list",
                ErrorKind.CONNECTION_FAILED,
                self.provider_id,
                retryable=True,
            )
        return [
            model_info_from_tag(tag, self.base_url, self.provider_id)
            for tag in models
            if isinstance(tag, dict)
        ]

    async def chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.transport.request(
            "POST",
            f"{self.base_url}/api/chat",
            provider_id=self.provider_id,
            json_body={**payload, "stream": False},
        )
        if not isinstance(data, dict):
            raise LLMError(
                "Ollama returned a non-object chat response",
                ErrorKind.UNKNOWN,
                self.provider_id,
            )
        return data

    def chat_stream(self, payload: Dict[str, Any]) -> AsyncIterator[str]:
        return self.transport.stream(
            "POST",
            f"{self.base_url}/api/chat",
            provider_id=self.provider_id,
            json_body={**payload, "stream": True},
        )


class OllamaProvider:
    def __init__(
        self,
        config: ProviderConfig,
        *,
        base_url: Optional[str] = None,
        transport: Optional[HttpTransport] = None,
    ) -> None:
        self.core = ProviderCore(config)
        self.base_url = (base_url or self.core.settings.endpoint or "http://localhost:11434").rstrip("/")
        timeout_ms = self.core.settings.timeout or 30000
        self._owns_transport = transport is None
        self.transport = transport or HttpTransport(
            self.core.settings.custom_headers, timeout_ms=timeout_ms
        )
        self.client = OllamaClient(self.base_url, self.transport, config.id)
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
        if settings.endpoint and settings.endpoint.rstrip("/") != self.base_url:
            self.base_url = settings.endpoint.rstrip("/")
            self.client = OllamaClient(self.base_url, self.transport, self.id)
            self._models = []
        return settings

    def supports_feature(self, feature: str) -> bool:
        return self.core.supports_feature(feature)

    async def initialize(self) -> None:
        try:
            self._models = await self.client.fetch_models()
        except Exception as exc:
            raise self.core.create_error(
                f"Failed to initialize Ollama provider: {exc}",
                ErrorKind.CONNECTION_FAILED,
                True,
                exc,
            ) from exc
        logger.info(
            "provider initialized provider=%s base_url=%s models=%d",
            self.id,
            self.base_url,
            len(self._models),
        )

    async def cleanup(self) -> None:
        self._models = []
        self.core.initialized = False
        if self._owns_transport:
            await self.transport.aclose()
        logger.info("provider cleaned up provider=%s", self.id)

    def _build_payload(self, request: LLMRequest) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        temperature = request.temperature if request.temperature is not None else self.settings.temperature
        max_tokens = request.max_tokens if request.max_tokens is not None else self.settings.max_tokens
        if temperature is not None:
            options["temperature"] = temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        payload: Dict[str, Any] = {
            "model": request.model or self.default_model,
            "messages": build_messages(request),
        }
        if options:
            payload["options"] = options
        return payload

    @staticmethod
    def _finish_reason(record: Dict[str, Any]) -> str:
        return normalize_finish_reason(record.get("done_reason") or record.get("finish_reason")) or "stop"

    def _final_metadata(self, record: Dict[str, Any], model: str) -> Dict[str, Any]:
        usage = TokenUsage.from_counts(record.get("prompt_eval_count"), record.get("eval_count"))
        metadata: Dict[str, Any] = {
            "finish_reason": self._finish_reason(record),
            "usage": usage.model_dump(exclude_none=True),
            "model": record.get("model") or model,
        }
        processing_time = _ns_to_ms(record.get("total_duration"))
        if processing_time is not None:
            metadata["processing_time"] = processing_time
        return metadata

    def _raise_record_error(self, record: Dict[str, Any]) -> None:
        message = str(record.get("error"))
        code = ErrorKind.MODEL_NOT_FOUND if "not found" in message.lower() else ErrorKind.UNKNOWN
        raise self.core.create_error(f"Ollama stream error: {message}", code)

    async def chat(self, request: LLMRequest) -> LLMResponse:
        validate_request(request, self.id)
        await self.core.ensure_initialized(self.initialize)
        payload = self._build_payload(request)
        data = await self.client.chat(payload)
        if data.get("error"):
            self._raise_record_error(data)
        content = extract_content(data)
        if content is None:
            raise self.core.create_error(
                f"Malformed Ollama response: missing message content (keys: {sorted(data)})"
            )
        metadata = self._final_metadata(data, payload["model"])
        return LLMResponse(
            content=content,
            model=metadata.pop("model"),
            usage=TokenUsage.model_validate(metadata.pop("usage")),
            finish_reason=metadata.pop("finish_reason"),
            metadata=metadata,
        )

    async def complete(self, prompt: str, options: Optional[CompletionOptions] = None) -> str:
        options = options or CompletionOptions()
        request = LLMRequest(
            messages=[{"role": "user", "content": prompt, "timestamp": time.time()}],
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            top_p=options.top_p,
        )
        response = await self.chat(request)
        return response.content

    def _chunk_from_record(self, record: Any, model: str, *, force_done: bool = False) -> Optional[StreamChunk]:
        if not isinstance(record, dict):
            return None
        if record.get("error"):
            self._raise_record_error(record)
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        done = bool(record.get("done")) or force_done
        if not done:
            return StreamChunk(content=content if isinstance(content, str) else "", done=False)
        return StreamChunk(
            content=content if isinstance(content, str) else "",
            done=True,
            metadata=self._final_metadata(record, model),
        )

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]:
        validate_request(request, self.id)
        await self.core.ensure_initialized(self.initialize)
        payload = self._build_payload(request)
        model = payload["model"]
        lines = LineBuffer()
        async with aclosing(self.client.chat_stream(payload)) as fragments:
            async for fragment in fragments:
                for line in lines.feed(fragment):
                    for record in parse_line_records(line):
                        chunk = self._chunk_from_record(record, model)
                        if chunk is None:
                            continue
                        yield chunk
                        if chunk.done:
                            return
        remainder = lines.finish()
        if remainder is not None:
            for record in parse_line_records(remainder):
                chunk = self._chunk_from_record(record, model, force_done=True)
                if chunk is not None:
                    yield chunk
                    return
        logger.warning("stream ended without a done record provider=%s model=%s", self.id, model)
        yield StreamChunk(content="", done=True, metadata={"finish_reason": "stop", "model": model})

    async def stream_with_callbacks(self, request: LLMRequest, options: StreamOptions) -> LLMResponse:
        return await drain_stream(self, request, options)

    async def is_available(self) -> bool:
        return await self.client.is_available()

    async def get_status(self) -> ProviderStatus:
        started = time.monotonic()
        last_checked = time.time()
        try:
            available = await self.is_available()
            latency = (time.monotonic() - started) * 1000
            if not available:
                return ProviderStatus(
                    available=False,
                    connected=False,
                    error="Ollama server not responding",
                    last_checked=last_checked,
                )
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
        except Exception as exc:
            return ProviderStatus(
                available=False,
                connected=False,
                error=str(exc) or type(exc).__name__,
                last_checked=last_checked,
            )

    async def get_models(self) -> List[ModelInfo]:
        if self._models:
            return list(self._models)
        self._models = await self.client.fetch_models()
        return list(self._models)


def create_ollama_provider(
    base_url: str = "http://localhost:11434",
    *,
    provider_id: str = "ollama",
    name: str = "Ollama Local",
    default_model: str = "llama2",
    timeout_ms: int = 30000,
    transport: Optional[HttpTransport] = None,
) -> OllamaProvider:
    config = ProviderConfig(
        id=provider_id,
        name=name,
        type="local",
        default_model=default_model,
        default_settings=ProviderSettings(endpoint=base_url, timeout=timeout_ms, retry_attempts=3),
        supported_features=ProviderFeatures(
            streaming=True,
            multiple_models=True,
            custom_endpoint=True,
            context_windows=[2048, 4096, 8192],
            function_calling=False,
            image_input=False,
            code_generation=True,
        ),
    )
    return OllamaProvider(config, base_url=base_url, transport=transport)
