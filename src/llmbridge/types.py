import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]
FinishReason = Literal["stop", "length", "content_filter", "tool_calls"]
ProviderType = Literal["local", "api"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: Optional[float] = None


class TabContext(BaseModel):
    title: str
    url: str
    domain: str


class MessageContext(BaseModel):
    page_url: Optional[str] = None
    page_title: Optional[str] = None
    selected_text: Optional[str] = None
    tab_context: List[TabContext] = Field(default_factory=list)


class LLMRequest(BaseModel):
    """One chat request in canonical form.

    Range checks (temperature, max_tokens, empty messages) run at dispatch in
    ``providers.base.validate_request``, not on construction.
    """

    messages: List[ChatMessage] = Field(default_factory=list)
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    system_prompt: Optional[str] = None
    stream: Optional[bool] = None
    context: Optional[MessageContext] = None


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: Optional[float] = None

    @classmethod
    def from_counts(cls, prompt_tokens: Optional[int], completion_tokens: Optional[int]) -> "TokenUsage":
        prompt = prompt_tokens or 0
        completion = completion_tokens or 0
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        )


class LLMResponse(BaseModel):
    content: str
    model: str
    usage: Optional[TokenUsage] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    finish_reason: Optional[FinishReason] = None


class StreamChunk(BaseModel):
    content: str = ""
    done: bool = False
    metadata: Optional[Dict[str, Any]] = None


class ProviderFeatures(BaseModel):
    streaming: bool = False
    multiple_models: bool = False
    custom_endpoint: bool = False
    context_windows: List[int] = Field(default_factory=list)
    function_calling: bool = False
    image_input: bool = False
    code_generation: bool = False


class ProviderSettings(BaseModel):
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout: Optional[int] = None
    retry_attempts: Optional[int] = None
    custom_headers: Dict[str, str] = Field(default_factory=dict)


class ProviderConfig(BaseModel):
    id: str
    name: str
    type: ProviderType
    description: Optional[str] = None
    default_model: Optional[str] = None
    supported_features: ProviderFeatures = Field(default_factory=ProviderFeatures)
    default_settings: ProviderSettings = Field(default_factory=ProviderSettings)


class ProviderStatus(BaseModel):
    available: bool
    connected: bool
    error: Optional[str] = None
    last_checked: float = Field(default_factory=time.time)
    latency: Optional[float] = None
    models: Optional[List[str]] = None


class ModelInfo(BaseModel):
    id: str
    name: str
    type: ProviderType
    provider: str
    family: Optional[str] = None
    parameter_size: Optional[str] = None
    context_length: Optional[int] = None
    size: Optional[int] = None
    modified_at: Optional[str] = None
    endpoint: Optional[str] = None


class CompletionOptions(BaseModel):
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[List[str]] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None


@dataclass
class StreamOptions:
    on_chunk: Optional[Callable[[StreamChunk], Any]] = None
    on_error: Optional[Callable[[Exception], Any]] = None
    on_complete: Optional[Callable[[LLMResponse], Any]] = None
    signal: Optional[asyncio.Event] = None

    @property
    def aborted(self) -> bool:
        return self.signal is not None and self.signal.is_set()


__all__ = [
    "ChatMessage",
    "CompletionOptions",
    "FinishReason",
    "LLMRequest",
    "LLMResponse",
    "MessageContext",
    "ModelInfo",
    "ProviderConfig",
    "ProviderFeatures",
    "ProviderSettings",
    "ProviderStatus",
    "ProviderType",
    "Role",
    "StreamChunk",
    "StreamOptions",
    "TabContext",
    "TokenUsage",
]
