import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - python 3.10
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt, ValidationError

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

PROVIDER_TYPES: frozenset[str] = frozenset({"ollama", "openai", "dummy"})


def env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def env_var_as_int(name: str, *, default: Optional[int] = None) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def default_config_dir() -> str:
    return os.environ.get(
        "LLMBRIDGE_CONFIG_DIR",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config"),
    )


def configure_logging(level: Optional[str] = None) -> None:
    name = (level or os.environ.get("LLMBRIDGE_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@dataclass
class ProviderDef:
    name: str
    type: str
    base_url: str
    model: str
    display_name: Optional[str] = None
    api_key_env: Optional[str] = None
    timeout_ms: int = 30000


class ManagerConfig(BaseModel):
    """Runtime knobs of the manager; ``configure`` returns an updated copy."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    timeout_ms: PositiveInt = Field(default=30000)
    retry_attempts: NonNegativeInt = Field(default=3)
    enable_fallback: bool = True
    default_provider: Optional[str] = None
    fallback_provider: Optional[str] = None

    def configure(self, **changes: object) -> "ManagerConfig":
        return type(self).model_validate({**self.model_dump(), **changes})


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    manager: ManagerConfig


class _ProviderModel(BaseModel):
    type: str = "ollama"
    base_url: str = ""
    model: str = ""
    name: Optional[str] = None
    api_key_env: Optional[str] = None
    timeout_ms: PositiveInt = Field(default=30000)

    model_config = ConfigDict(extra="forbid")


class _ManagerFileModel(BaseModel):
    manager: ManagerConfig = Field(default_factory=ManagerConfig)

    model_config = ConfigDict(extra="forbid")


def _flatten_validation_error(exc: ValidationError, source: str) -> ValueError:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return ValueError(f"{source}: " + "; ".join(problems))


def _read_provider(name: str, raw: object) -> ProviderDef:
    if not isinstance(raw, dict):
        raise ValueError(f"Provider '{name}' must be a table")
    try:
        parsed = _ProviderModel.model_validate(raw)
    except ValidationError as exc:
        raise _flatten_validation_error(exc, f"provider '{name}'") from exc
    provider_type = parsed.type.strip()
    if provider_type not in PROVIDER_TYPES:
        display = provider_type or "<missing>"
        raise ValueError(f"Unknown provider type '{display}' for provider '{name}'")
    if provider_type != "dummy" and not parsed.base_url:
        raise ValueError(f"Provider '{name}' requires a base_url")
    return ProviderDef(
        name=name,
        type=provider_type,
        base_url=parsed.base_url,
        model=parsed.model,
        display_name=parsed.name,
        api_key_env=parsed.api_key_env,
        timeout_ms=int(parsed.timeout_ms),
    )


def validate_manager_config(manager: ManagerConfig, providers: Dict[str, ProviderDef]) -> None:
    for label, provider_name in (
        ("default_provider", manager.default_provider),
        ("fallback_provider", manager.fallback_provider),
    ):
        if provider_name is None:
            continue
        if provider_name not in providers:
            available = ", ".join(sorted(providers)) or "<none>"
            raise ValueError(
                f"manager.{label} references undefined provider '{provider_name}'. "
                f"Available providers: {available}"
            )


def load_config(config_dir: Optional[str] = None, use_dummy: Optional[bool] = None) -> LoadedConfig:
    config_dir = config_dir or default_config_dir()
    if use_dummy is None:
        use_dummy = env_var_as_bool("LLMBRIDGE_USE_DUMMY")
    prov_path = os.path.join(config_dir, "providers.dummy.toml" if use_dummy else "providers.toml")
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {
        name: _read_provider(name, raw) for name, raw in prov_data.items()
    }

    manager_path = os.path.join(config_dir, "manager.yaml")
    mdata: dict = {}
    if os.path.exists(manager_path):
        with open(manager_path, "r", encoding="utf-8") as f:
            mdata = yaml.safe_load(f) or {}
    try:
        parsed = _ManagerFileModel.model_validate(mdata)
    except ValidationError as exc:
        raise _flatten_validation_error(exc, "manager.yaml") from exc
    manager = parsed.manager
    timeout_override = env_var_as_int("LLMBRIDGE_TIMEOUT_MS")
    if timeout_override is not None:
        manager = manager.configure(timeout_ms=timeout_override)
    if use_dummy:
        # drop references the dummy catalog does not define
        manager = manager.configure(
            default_provider=manager.default_provider if manager.default_provider in providers else None,
            fallback_provider=manager.fallback_provider if manager.fallback_provider in providers else None,
        )
    validate_manager_config(manager, providers)
    return LoadedConfig(providers=providers, manager=manager)


__all__ = [
    "LoadedConfig",
    "ManagerConfig",
    "PROVIDER_TYPES",
    "ProviderDef",
    "configure_logging",
    "default_config_dir",
    "env_var_as_bool",
    "env_var_as_int",
    "load_config",
    "validate_manager_config",
]
