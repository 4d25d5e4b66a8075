from __future__ import annotations

from pathlib import Path

import pytest

from temperature_decider.config import (
    ConfigError,
    ProvidersConfig,
    load_providers_config,
    resolve_ollama_base_url,
    resolve_secret,
)


def _write(tmp_path: Path, text: str) -> Path:
    p = tmp_path / "providers.yaml"
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults_without_path():
    cfg = load_providers_config()
    assert cfg == ProvidersConfig()
    assert cfg.defaults.top_k == 5
    assert cfg.defaults.temperature == 0.7
    assert [m.id for m in cfg.openai.models] == ["gpt-5.2", "gpt-4o"]
    assert [m.id for m in cfg.gemini.models] == ["gemini-2.0-flash-exp"]
    assert cfg.ollama.cache_ttl_s == 30.0
    assert cfg.ollama.discovery_timeout_s == 5.0


def test_repo_config_file_loads():
    repo_cfg = Path(__file__).resolve().parents[1] / "configs" / "providers.yaml"
    cfg = load_providers_config(repo_cfg)
    assert cfg.openai.api_key_env == "OPENAI_API_KEY"
    assert cfg.ollama.proxy_prefix is None


def test_partial_yaml_overrides(tmp_path):
    path = _write(
        tmp_path,
        """
defaults:
  top_k: 3
openai:
  models:
    - id: gpt-4o-mini
ollama:
  base_url: http://gpu-box:11434
  proxy_prefix: http://localhost:3000/ollama
""",
    )
    cfg = load_providers_config(path)

    assert cfg.defaults.top_k == 3
    assert cfg.defaults.temperature == 0.7
    assert [(m.id, m.name) for m in cfg.openai.models] == [("gpt-4o-mini", "gpt-4o-mini")]
    assert cfg.gemini.api_key_env == "GOOGLE_AI_API_KEY"
    assert cfg.ollama.base_url == "http://gpu-box:11434"
    assert cfg.ollama.proxy_prefix == "http://localhost:3000/ollama"


def test_empty_file_is_defaults(tmp_path):
    assert load_providers_config(_write(tmp_path, "")) == ProvidersConfig()


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_providers_config(tmp_path / "nope.yaml")


@pytest.mark.parametrize(
    "text",
    [
        "- not a mapping",
        "defaults:\n  temperature: 1.5",
        "defaults:\n  top_k: 0",
        "openai: []",
        "openai:\n  models: {}",
        "openai:\n  models: []",
        "openai:\n  models:\n    - name: no id",
        "gemini:\n  models:\n    - {id: a}\n    - {id: a}",
        "ollama:\n  cache_ttl_s: -1",
        "ollama:\n  discovery_timeout_s: soon",
    ],
)
def test_invalid_configs(tmp_path, text):
    with pytest.raises(ConfigError):
        load_providers_config(_write(tmp_path, text))


def test_resolve_secret(monkeypatch):
    monkeypatch.setenv("TD_TEST_KEY", "  sk-123 ")
    monkeypatch.setenv("TD_BLANK_KEY", "   ")
    monkeypatch.delenv("TD_MISSING_KEY", raising=False)

    assert resolve_secret("TD_TEST_KEY") == "sk-123"
    assert resolve_secret("TD_BLANK_KEY") is None
    assert resolve_secret("TD_MISSING_KEY") is None
    assert resolve_secret("") is None


def test_resolve_ollama_base_url_prefers_env(monkeypatch):
    cfg = ProvidersConfig().ollama
    monkeypatch.delenv("OLLAMA_BASE_URL", raising=False)
    assert resolve_ollama_base_url(cfg) == "http://localhost:11434"

    monkeypatch.setenv("OLLAMA_BASE_URL", "http://10.0.0.5:11434")
    assert resolve_ollama_base_url(cfg) == "http://10.0.0.5:11434"
