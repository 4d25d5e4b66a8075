from .models import (
    DefaultsConfig,
    GeminiConfig,
    ModelEntry,
    OllamaConfig,
    OpenAIConfig,
    ProvidersConfig,
)
from .loader import ConfigError, load_providers_config, resolve_ollama_base_url, resolve_secret

__all__ = [
    # configs
    "DefaultsConfig",
    "GeminiConfig",
    "ModelEntry",
    "OllamaConfig",
    "OpenAIConfig",
    "ProvidersConfig",
    # loaders
    "ConfigError",
    "load_providers_config",
    "resolve_ollama_base_url",
    "resolve_secret",
]
