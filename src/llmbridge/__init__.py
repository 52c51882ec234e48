"""Provider-agnostic access to local and remote language models."""

import time
from typing import Any, Dict, List, Optional

from .config import LoadedConfig, ManagerConfig, ProviderDef, load_config
from .errors import ErrorKind, LLMError
from .providers import (
    DummyProvider,
    LLMProvider,
    OllamaProvider,
    OpenAICompatProvider,
    build_provider,
    create_dummy_provider,
    create_ollama_provider,
    create_openai_provider,
)
from .services import Manager, ManagerState, bootstrap_manager, create_manager
from .types import (
    ChatMessage,
    CompletionOptions,
    LLMRequest,
    LLMResponse,
    MessageContext,
    ModelInfo,
    ProviderStatus,
    StreamChunk,
    StreamOptions,
    TokenUsage,
)

__version__ = "0.1.0"


def create_chat_request(
    messages: List[Dict[str, Any]],
    *,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    system_prompt: Optional[str] = None,
    context: Optional[MessageContext] = None,
    stream: Optional[bool] = None,
) -> LLMRequest:
    now = time.time()
    return LLMRequest(
        messages=[{"timestamp": now, **message} for message in messages],
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        system_prompt=system_prompt,
        context=context,
        stream=stream,
    )


def create_completion_request(prompt: str, options: Optional[CompletionOptions] = None) -> LLMRequest:
    options = options or CompletionOptions()
    return LLMRequest(
        messages=[ChatMessage(role="user", content=prompt, timestamp=time.time())],
        temperature=options.temperature,
        max_tokens=options.max_tokens,
        top_p=options.top_p,
    )


async def has_available_providers(manager: Manager) -> bool:
    statuses = await manager.get_all_provider_statuses()
    return any(status.available for status in statuses.values())


def provider_summary(manager: Manager) -> Dict[str, Any]:
    active = manager.get_active_provider()
    return {
        "state": manager.state.value,
        "total": len(manager.provider_ids()),
        "active": active.id if active else None,
        "fallback": manager.registry.fallback_provider_id,
        "providers": [
            {"id": p.id, "name": p.name, "type": p.config.type, "model": p.default_model}
            for p in manager.all_providers()
        ],
    }


__all__ = [
    "ChatMessage",
    "CompletionOptions",
    "DummyProvider",
    "ErrorKind",
    "LLMError",
    "LLMProvider",
    "LLMRequest",
    "LLMResponse",
    "LoadedConfig",
    "Manager",
    "ManagerConfig",
    "ManagerState",
    "MessageContext",
    "ModelInfo",
    "OllamaProvider",
    "OpenAICompatProvider",
    "ProviderDef",
    "ProviderStatus",
    "StreamChunk",
    "StreamOptions",
    "TokenUsage",
    "bootstrap_manager",
    "build_provider",
    "create_chat_request",
    "create_completion_request",
    "create_dummy_provider",
    "create_manager",
    "create_ollama_provider",
    "create_openai_provider",
    "has_available_providers",
    "load_config",
    "provider_summary",
]
