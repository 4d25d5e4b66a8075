from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple


# -----------------------------
# Static model catalogs
# -----------------------------

@dataclass(frozen=True)
class ModelEntry:
    id: str
    name: str


OPENAI_DEFAULT_MODELS: Tuple[ModelEntry, ...] = (
    ModelEntry(id="gpt-5.2", name="GPT-5.2"),
    ModelEntry(id="gpt-4o", name="GPT-4o"),
)

GEMINI_DEFAULT_MODELS: Tuple[ModelEntry, ...] = (
    ModelEntry(id="gemini-2.0-flash-exp", name="Gemini 2.0 Flash"),
)


# -----------------------------
# Provider configs (providers.yaml)
# -----------------------------

@dataclass(frozen=True)
class DefaultsConfig:
    temperature: float = 0.7
    top_k: int = 5


@dataclass(frozen=True)
class OpenAIConfig:
    api_key_env: str = "OPENAI_API_KEY"
    timeout_s: float = 30.0
    max_completion_tokens: int = 10
    models: List[ModelEntry] = field(default_factory=lambda: list(OPENAI_DEFAULT_MODELS))


@dataclass(frozen=True)
class GeminiConfig:
    api_key_env: str = "GOOGLE_AI_API_KEY"
    base_url: str = "https://generativelanguage.googleapis.com"
    timeout_s: float = 30.0
    max_output_tokens: int = 10
    models: List[ModelEntry] = field(default_factory=lambda: list(GEMINI_DEFAULT_MODELS))


@dataclass(frozen=True)
class OllamaConfig:
    # base_url_env wins over base_url when the variable is set.
    base_url_env: str = "OLLAMA_BASE_URL"
    base_url: str = "http://localhost:11434"
    discovery_timeout_s: float = 5.0
    generate_timeout_s: float = 60.0
    cache_ttl_s: float = 30.0
    proxy_prefix: Optional[str] = None


@dataclass(frozen=True)
class ProvidersConfig:
    """
    Top-level configuration for all providers.

    Secrets are never stored here, only the names of the environment
    variables that hold them.
    """
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
