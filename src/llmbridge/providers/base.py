import asyncio
import inspect
import logging
from contextlib import aclosing
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from ..errors import ErrorKind, LLMError, as_llm_error
from ..types import (
    CompletionOptions,
    LLMRequest,
    LLMResponse,
    ModelInfo,
    ProviderConfig,
    ProviderSettings,
    ProviderStatus,
    StreamChunk,
    StreamOptions,
    TokenUsage,
)

logger = logging.getLogger(__name__)

FINISH_REASONS: frozenset[str] = frozenset({"stop", "length", "content_filter", "tool_calls"})


@runtime_checkable
class LLMProvider(Protocol):
    """Capability surface every backend exposes."""

    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def config(self) -> ProviderConfig: ...

    @property
    def settings(self) -> ProviderSettings: ...

    @property
    def default_model(self) -> str: ...

    async def chat(self, request: LLMRequest) -> LLMResponse: ...

    async def complete(self, prompt: str, options: Optional[CompletionOptions] = None) -> str: ...

    def stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]: ...

    async def stream_with_callbacks(self, request: LLMRequest, options: StreamOptions) -> LLMResponse: ...

    async def is_available(self) -> bool: ...

    async def get_status(self) -> ProviderStatus: ...

    async def get_models(self) -> List[ModelInfo]: ...

    async def initialize(self) -> None: ...

    async def cleanup(self) -> None: ...

    def configure(self, **changes: Any) -> ProviderSettings: ...

    def supports_feature(self, feature: str) -> bool: ...


class ProviderCore:
    """State and helpers shared by provider implementations.

    Holds the static config, the mutable settings and the initialized flag.
    Providers own one instance and delegate to it.
    """

    _RESET_FIELDS: frozenset[str] = frozenset({"endpoint", "api_key"})

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self.settings = config.default_settings.model_copy(deep=True)
        self.initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def default_model(self) -> str:
        return self.settings.model or self.config.default_model or "unknown"

    def configure(self, **changes: Any) -> ProviderSettings:
        current = self.settings.model_dump()
        if any(
            key in self._RESET_FIELDS and value != current.get(key)
            for key, value in changes.items()
        ):
            self.initialized = False
        self.settings = ProviderSettings.model_validate({**current, **changes})
        return self.settings.model_copy()

    def supports_feature(self, feature: str) -> bool:
        return bool(getattr(self.config.supported_features, feature, False))

    def create_error(
        self,
        message: str,
        code: ErrorKind = ErrorKind.UNKNOWN,
        retryable: bool = False,
        original_error: Optional[BaseException] = None,
    ) -> LLMError:
        return LLMError(message, code, self.id, retryable, original_error)

    async def ensure_initialized(self, initialize: Callable[[], Awaitable[None]]) -> None:
        if self.initialized:
            return
        async with self._init_lock:
            if not self.initialized:
                await initialize()
                self.initialized = True


def validate_request(request: LLMRequest, provider_id: str) -> None:
    def invalid(message: str) -> LLMError:
        return LLMError(message, ErrorKind.INVALID_REQUEST, provider_id, retryable=False)

    if not request.messages:
        raise invalid("Request must contain at least one message")
    if request.temperature is not None and not 0 <= request.temperature <= 2:
        raise invalid("Temperature must be between 0 and 2")
    if request.max_tokens is not None and request.max_tokens < 1:
        raise invalid("max_tokens must be at least 1")
    if request.top_p is not None and not 0 <= request.top_p <= 1:
        raise invalid("top_p must be between 0 and 1")
    system_positions = [i for i, message in enumerate(request.messages) if message.role == "system"]
    if len(system_positions) > 1 or (system_positions and system_positions[0] != 0):
        raise invalid("A system message may appear only once, as the first message")


def _render_context(request: LLMRequest) -> Optional[str]:
    context = request.context
    if context is None:
        return None
    parts: List[str] = []
    if context.page_title or context.page_url:
        parts.append(f"Current page: {context.page_title or ''} ({context.page_url or ''})".strip())
    if context.selected_text:
        parts.append(f"Selected text:\n{context.selected_text}")
    if context.tab_context:
        tabs = "\n".join(f"- {tab.title} [{tab.domain}] {tab.url}" for tab in context.tab_context)
        parts.append(f"Open tabs:\n{tabs}")
    return "\n\n".join(parts) or None


def build_messages(request: LLMRequest) -> List[Dict[str, str]]:
    """Wire-format messages with the system prompt and page context folded in."""
    messages = [{"role": m.role, "content": m.content} for m in request.messages]
    preamble = [text for text in (request.system_prompt, _render_context(request)) if text]
    if not preamble:
        return messages
    if messages and messages[0]["role"] == "system":
        if request.system_prompt and messages[0]["content"]:
            # an explicit system message wins over system_prompt
            preamble = preamble[1:]
        messages[0]["content"] = "\n\n".join([messages[0]["content"], *preamble]).strip()
    else:
        messages.insert(0, {"role": "system", "content": "\n\n".join(preamble)})
    return messages


def normalize_finish_reason(raw: Any) -> Optional[str]:
    if not isinstance(raw, str) or not raw:
        return None
    if raw in FINISH_REASONS:
        return raw
    if raw in {"max_tokens", "length_limit"}:
        return "length"
    return "stop"


def extract_content(payload: Any) -> Optional[str]:
    """Best-effort text extraction from a backend payload of unknown shape."""
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return None
    message = payload.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    if isinstance(message, str):
        return message
    for key in ("response", "content", "text", "output"):
        value = payload.get(key)
        if isinstance(value, str):
            return value
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            for key in ("message", "delta"):
                nested = first.get(key)
                if isinstance(nested, dict) and isinstance(nested.get("content"), str):
                    return nested["content"]
            if isinstance(first.get("text"), str):
                return first["text"]
    return None


def response_from_chunks(
    contents: List[str], last: Optional[StreamChunk], fallback_model: str
) -> LLMResponse:
    content = "".join(contents)
    metadata = dict(last.metadata or {}) if last is not None and last.done else {}
    if not metadata:
        return LLMResponse(content=content, model=fallback_model)
    usage = metadata.pop("usage", None)
    finish_reason = normalize_finish_reason(metadata.pop("finish_reason", None))
    model = metadata.pop("model", None) or fallback_model
    return LLMResponse(
        content=content,
        model=model,
        usage=TokenUsage.model_validate(usage) if isinstance(usage, dict) else None,
        finish_reason=finish_reason,
        metadata=metadata,
    )


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def drain_stream(
    provider: LLMProvider, request: LLMRequest, options: StreamOptions
) -> LLMResponse:
    """Consume ``provider.stream`` while driving the caller's callbacks.

    The signal is checked before the stream is opened and on every chunk; once
    set, the stream is closed and a non-retryable error is raised.
    """
    contents: List[str] = []
    last: Optional[StreamChunk] = None
    fallback_model = request.model or provider.default_model
    try:
        if options.aborted:
            raise LLMError("Request aborted", ErrorKind.UNKNOWN, provider.id, retryable=False)
        async with aclosing(provider.stream(request)) as chunks:
            async for chunk in chunks:
                if options.aborted:
                    raise LLMError("Request aborted", ErrorKind.UNKNOWN, provider.id, retryable=False)
                contents.append(chunk.content)
                last = chunk
                await _invoke(options.on_chunk, chunk)
        response = response_from_chunks(contents, last, fallback_model)
        await _invoke(options.on_complete, response)
        return response
    except Exception as exc:
        error = as_llm_error(exc, provider.id, prefix="Streaming failed")
        logger.error("stream failed provider=%s code=%s error=%s", provider.id, error.code.value, error.message)
        await _invoke(options.on_error, error)
        if error is exc:
            raise
        raise error from exc


__all__ = [
    "FINISH_REASONS",
    "LLMProvider",
    "ProviderCore",
    "build_messages",
    "drain_stream",
    "extract_content",
    "normalize_finish_reason",
    "response_from_chunks",
    "validate_request",
]
