from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .models import (
    DefaultsConfig,
    GeminiConfig,
    ModelEntry,
    OllamaConfig,
    OpenAIConfig,
    ProvidersConfig,
)


class ConfigError(ValueError):
    pass


def _read_yaml(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    data = yaml.safe_load(p.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"YAML root must be a mapping/dict: {p}")
    return data


def _require(d: Mapping[str, Any], key: str, ctx: str) -> Any:
    if key not in d:
        raise ConfigError(f"Missing required key '{key}' in {ctx}")
    return d[key]


def _as_dict(x: Any, ctx: str) -> Dict[str, Any]:
    if not isinstance(x, dict):
        raise ConfigError(f"Expected a mapping/dict in {ctx}, got {type(x)}")
    return x


def _as_list(x: Any, ctx: str) -> List[Any]:
    if not isinstance(x, list):
        raise ConfigError(f"Expected a list in {ctx}, got {type(x)}")
    return x


def _section(raw: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    return _as_dict(value, f"providers.{key}")


def _positive_float(value: Any, ctx: str) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{ctx} must be a number, got {value!r}") from e
    if out <= 0:
        raise ConfigError(f"{ctx} must be positive, got {out}")
    return out


def _positive_int(value: Any, ctx: str) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{ctx} must be an integer, got {value!r}") from e
    if out <= 0:
        raise ConfigError(f"{ctx} must be a positive integer, got {out}")
    return out


def _load_models(raw: Mapping[str, Any], ctx: str, default: List[ModelEntry]) -> List[ModelEntry]:
    if "models" not in raw:
        return list(default)

    models_raw = _as_list(raw["models"], f"{ctx}.models")
    models: List[ModelEntry] = []
    seen = set()
    for i, m in enumerate(models_raw):
        m_dict = _as_dict(m, f"{ctx}.models[{i}]")
        model_id = str(_require(m_dict, "id", f"{ctx}.models[{i}]"))
        if model_id in seen:
            raise ConfigError(f"Duplicate model id '{model_id}' in {ctx}.models")
        seen.add(model_id)
        name = str(m_dict.get("name", model_id))
        models.append(ModelEntry(id=model_id, name=name))

    if not models:
        raise ConfigError(f"{ctx}.models must not be empty")
    return models


def load_providers_config(path: str | Path | None = None) -> ProvidersConfig:
    """
    Load providers.yaml, supporting:
      defaults.{temperature, top_k}
      openai.{api_key_env, timeout_s, max_completion_tokens, models}
      gemini.{api_key_env, base_url, timeout_s, max_output_tokens, models}
      ollama.{base_url_env, base_url, discovery_timeout_s, generate_timeout_s, cache_ttl_s, proxy_prefix}

    Every section and key is optional; with no path the built-in defaults are returned.
    """
    if path is None:
        return ProvidersConfig()

    raw = _read_yaml(path)

    defaults_raw = _section(raw, "defaults")
    try:
        temperature = float(defaults_raw.get("temperature", DefaultsConfig.temperature))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"defaults.temperature must be a number, got {defaults_raw.get('temperature')!r}") from e
    if not 0.0 <= temperature <= 1.0:
        raise ConfigError(f"defaults.temperature must be within [0, 1], got {temperature}")
    defaults = DefaultsConfig(
        temperature=temperature,
        top_k=_positive_int(defaults_raw.get("top_k", DefaultsConfig.top_k), "defaults.top_k"),
    )

    openai_raw = _section(raw, "openai")
    base_openai = OpenAIConfig()
    openai = OpenAIConfig(
        api_key_env=str(openai_raw.get("api_key_env", base_openai.api_key_env)),
        timeout_s=_positive_float(openai_raw.get("timeout_s", base_openai.timeout_s), "openai.timeout_s"),
        max_completion_tokens=_positive_int(
            openai_raw.get("max_completion_tokens", base_openai.max_completion_tokens),
            "openai.max_completion_tokens",
        ),
        models=_load_models(openai_raw, "openai", base_openai.models),
    )

    gemini_raw = _section(raw, "gemini")
    base_gemini = GeminiConfig()
    gemini = GeminiConfig(
        api_key_env=str(gemini_raw.get("api_key_env", base_gemini.api_key_env)),
        base_url=str(gemini_raw.get("base_url", base_gemini.base_url)),
        timeout_s=_positive_float(gemini_raw.get("timeout_s", base_gemini.timeout_s), "gemini.timeout_s"),
        max_output_tokens=_positive_int(
            gemini_raw.get("max_output_tokens", base_gemini.max_output_tokens),
            "gemini.max_output_tokens",
        ),
        models=_load_models(gemini_raw, "gemini", base_gemini.models),
    )

    ollama_raw = _section(raw, "ollama")
    base_ollama = OllamaConfig()
    proxy_prefix = ollama_raw.get("proxy_prefix", base_ollama.proxy_prefix)
    ollama = OllamaConfig(
        base_url_env=str(ollama_raw.get("base_url_env", base_ollama.base_url_env)),
        base_url=str(ollama_raw.get("base_url", base_ollama.base_url)),
        discovery_timeout_s=_positive_float(
            ollama_raw.get("discovery_timeout_s", base_ollama.discovery_timeout_s),
            "ollama.discovery_timeout_s",
        ),
        generate_timeout_s=_positive_float(
            ollama_raw.get("generate_timeout_s", base_ollama.generate_timeout_s),
            "ollama.generate_timeout_s",
        ),
        cache_ttl_s=_positive_float(ollama_raw.get("cache_ttl_s", base_ollama.cache_ttl_s), "ollama.cache_ttl_s"),
        proxy_prefix=str(proxy_prefix) if proxy_prefix else None,
    )

    return ProvidersConfig(defaults=defaults, openai=openai, gemini=gemini, ollama=ollama)


def resolve_secret(env_name: Optional[str]) -> Optional[str]:
    """Read a credential from the environment; blank values count as absent."""
    if not env_name:
        return None
    value = os.getenv(env_name)
    if value is None or not value.strip():
        return None
    return value.strip()


def resolve_ollama_base_url(cfg: OllamaConfig) -> str:
    return resolve_secret(cfg.base_url_env) or cfg.base_url
