from pathlib import Path

import pytest

from llmbridge.config import (
    ManagerConfig,
    ProviderDef,
    env_var_as_bool,
    env_var_as_int,
    load_config,
)
from llmbridge.providers import DummyProvider, OllamaProvider, OpenAICompatProvider, build_provider

PROVIDERS = """
[local]
type = "ollama"
base_url = "http://localhost:11434"
model = "llama3"

[remote]
type = "openai"
base_url = "https://api.example.com/v1"
model = "gpt-x"
api_key_env = "REMOTE_KEY"
timeout_ms = 10000
"""

DUMMY_PROVIDERS = """
[dummy]
type = "dummy"
model = "dummy"
"""


def _write(config_dir: Path, providers: str = PROVIDERS, manager: str | None = None) -> str:
    config_dir.mkdir(exist_ok=True)
    (config_dir / "providers.toml").write_text(providers, encoding="utf-8")
    (config_dir / "providers.dummy.toml").write_text(DUMMY_PROVIDERS, encoding="utf-8")
    if manager is not None:
        (config_dir / "manager.yaml").write_text(manager, encoding="utf-8")
    return str(config_dir)


def test_load_config_reads_providers_and_manager(tmp_path: Path) -> None:
    config_dir = _write(
        tmp_path / "config",
        manager="manager:\n  timeout_ms: 5000\n  default_provider: local\n  fallback_provider: remote\n",
    )

    loaded = load_config(config_dir, use_dummy=False)

    assert set(loaded.providers) == {"local", "remote"}
    assert loaded.providers["remote"].api_key_env == "REMOTE_KEY"
    assert loaded.providers["remote"].timeout_ms == 10000
    assert loaded.manager.timeout_ms == 5000
    assert loaded.manager.retry_attempts == 3
    assert loaded.manager.fallback_provider == "remote"


def test_manager_yaml_is_optional(tmp_path: Path) -> None:
    loaded = load_config(_write(tmp_path / "config"), use_dummy=False)
    assert loaded.manager == ManagerConfig()


def test_unknown_provider_type_is_rejected(tmp_path: Path) -> None:
    config_dir = _write(tmp_path / "config", providers='[odd]\ntype = "carrier-pigeon"\nbase_url = "x"\n')
    with pytest.raises(ValueError, match="Unknown provider type 'carrier-pigeon' for provider 'odd'"):
        load_config(config_dir, use_dummy=False)


def test_missing_base_url_is_rejected(tmp_path: Path) -> None:
    config_dir = _write(tmp_path / "config", providers='[local]\ntype = "ollama"\n')
    with pytest.raises(ValueError, match="requires a base_url"):
        load_config(config_dir, use_dummy=False)


def test_undefined_default_provider_is_rejected(tmp_path: Path) -> None:
    config_dir = _write(tmp_path / "config", manager="manager:\n  default_provider: ghost\n")
    with pytest.raises(ValueError, match="undefined provider 'ghost'"):
        load_config(config_dir, use_dummy=False)


def test_manager_validation_errors_are_flattened(tmp_path: Path) -> None:
    config_dir = _write(
        tmp_path / "config",
        manager="manager:\n  timeout_ms: -1\n  retry_attempts: many\n  surprise: 1\n",
    )
    with pytest.raises(ValueError) as excinfo:
        load_config(config_dir, use_dummy=False)
    message = str(excinfo.value)
    assert message.startswith("manager.yaml:")
    assert "manager -> timeout_ms" in message
    assert "manager -> retry_attempts" in message
    assert "manager -> surprise" in message


def test_dummy_mode_uses_dummy_catalog(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_dir = _write(tmp_path / "config", manager="manager:\n  default_provider: local\n")
    monkeypatch.setenv("LLMBRIDGE_USE_DUMMY", "yes")
    monkeypatch.setenv("LLMBRIDGE_TIMEOUT_MS", "750")

    loaded = load_config(config_dir)

    assert list(loaded.providers) == ["dummy"]
    assert loaded.manager.default_provider is None
    assert loaded.manager.timeout_ms == 750
    assert loaded.providers["dummy"].type == "dummy"


def test_env_helpers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLAG", "Off")
    monkeypatch.setenv("NUM", "abc")
    assert env_var_as_bool("FLAG", default=True) is False
    assert env_var_as_bool("MISSING_FLAG", default=True) is True
    assert env_var_as_int("NUM", default=9) == 9
    monkeypatch.setenv("NUM", "-5")
    assert env_var_as_int("NUM") is None


def test_build_provider_dispatches_on_type() -> None:
    cases = [
        (ProviderDef("local", "ollama", "http://localhost:11434", "llama3"), OllamaProvider),
        (ProviderDef("remote", "openai", "https://api.example.com", "gpt-x", api_key_env="K"), OpenAICompatProvider),
        (ProviderDef("echo", "dummy", "", ""), DummyProvider),
    ]
    for defn, expected in cases:
        provider = build_provider(defn)
        assert isinstance(provider, expected)
        assert provider.id == defn.name

    assert build_provider(cases[0][0]).default_model == "llama3"
    with pytest.raises(ValueError, match="Unknown provider type '<missing>'"):
        build_provider(ProviderDef("blank", " ", "", ""))


def test_repository_config_files_load() -> None:
    config_dir = str(Path(__file__).resolve().parents[1] / "config")
    assert set(load_config(config_dir, use_dummy=False).providers) == {"ollama", "openai"}
    dummy = load_config(config_dir, use_dummy=True)
    assert set(dummy.providers) == {"dummy", "dummy_backup"}
    assert dummy.manager.default_provider is None
