from typing import Callable, Dict

from ..config import ProviderDef
from .base import (
    LLMProvider,
    ProviderCore,
    build_messages,
    drain_stream,
    extract_content,
    response_from_chunks,
    validate_request,
)
from .dummy import DummyProvider, create_dummy_provider
from .ollama import OllamaClient, OllamaProvider, create_ollama_provider
from .openai import OpenAICompatProvider, create_openai_provider


def _ollama(defn: ProviderDef) -> LLMProvider:
    return create_ollama_provider(
        defn.base_url,
        provider_id=defn.name,
        name=defn.display_name or defn.name,
        default_model=defn.model or "llama2",
        timeout_ms=defn.timeout_ms,
    )


def _openai(defn: ProviderDef) -> LLMProvider:
    return create_openai_provider(
        defn.base_url,
        provider_id=defn.name,
        name=defn.display_name or defn.name,
        default_model=defn.model or "gpt-4o-mini",
        api_key_env=defn.api_key_env,
        timeout_ms=defn.timeout_ms,
    )


def _dummy(defn: ProviderDef) -> LLMProvider:
    return create_dummy_provider(defn.name, model=defn.model or "dummy", name=defn.display_name or defn.name)


_PROVIDER_FACTORIES: Dict[str, Callable[[ProviderDef], LLMProvider]] = {
    "ollama": _ollama,
    "openai": _openai,
    "dummy": _dummy,
}


def build_provider(defn: ProviderDef) -> LLMProvider:
    factory = _PROVIDER_FACTORIES.get(defn.type.strip() if defn.type else "")
    if factory is None:
        display_type = (defn.type or "").strip() or "<missing>"
        raise ValueError(f"Unknown provider type '{display_type}' for provider '{defn.name}'")
    return factory(defn)


__all__ = [
    "DummyProvider",
    "LLMProvider",
    "OllamaClient",
    "OllamaProvider",
    "OpenAICompatProvider",
    "ProviderCore",
    "build_messages",
    "build_provider",
    "create_dummy_provider",
    "create_ollama_provider",
    "create_openai_provider",
    "drain_stream",
    "extract_content",
    "response_from_chunks",
    "validate_request",
]
