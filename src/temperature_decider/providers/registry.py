from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional

from temperature_decider.config.loader import resolve_ollama_base_url, resolve_secret
from temperature_decider.config.models import ProvidersConfig

from .errors import ProviderNotFoundError
from .gemini_provider import GeminiProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider
from .types import LLMProvider, ModelConfig, ProviderWithStatus

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[], Iterable[LLMProvider]]


class ProviderRegistry:
    """
    Catalog of provider instances, keyed by provider id.

    Built once by the application and passed to whoever needs it. The
    factory runs lazily on first access; later accesses reuse the same
    instances for the life of the registry.
    """

    def __init__(self, factory: Optional[ProviderFactory] = None) -> None:
        self._factory = factory
        self._providers: Dict[str, LLMProvider] = {}
        self._initialized = False

    def register(self, provider: LLMProvider) -> None:
        if provider.id in self._providers:
            logger.warning("Replacing existing provider: %s", provider.id)
        self._providers[provider.id] = provider
        logger.debug("Registered provider: %s (%s)", provider.id, provider.name)

    def get(self, provider_id: str) -> LLMProvider:
        self._ensure_initialized()
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id, list(self._providers))
        return provider

    def get_all(self) -> List[LLMProvider]:
        self._ensure_initialized()
        return list(self._providers.values())

    def ids(self) -> List[str]:
        self._ensure_initialized()
        return list(self._providers)

    async def get_with_status(self) -> List[ProviderWithStatus]:
        """Check every provider concurrently; one failing check never aborts the batch."""
        providers = self.get_all()

        async def check(provider: LLMProvider) -> ProviderWithStatus:
            try:
                available = await provider.is_available()
            except Exception as e:
                logger.warning("Availability check failed for %s: %s", provider.id, e)
                return ProviderWithStatus(provider=provider, available=False, error=str(e) or type(e).__name__)
            return ProviderWithStatus(provider=provider, available=bool(available))

        return list(await asyncio.gather(*(check(p) for p in providers)))

    async def get_available(self) -> List[LLMProvider]:
        statuses = await self.get_with_status()
        return [s.provider for s in statuses if s.available]

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        if self._factory is None:
            return
        for provider in self._factory():
            self.register(provider)
        logger.info("Initialized provider registry: %s", ", ".join(self._providers) or "none")


def build_default_providers(config: Optional[ProvidersConfig] = None) -> List[LLMProvider]:
    """
    The three standard providers, with credentials read from the environment now.

    Absent credentials are passed through as None; the providers report
    API_KEY_MISSING when they are first used.
    """
    cfg = config or ProvidersConfig()
    return [
        OpenAIProvider(
            api_key=resolve_secret(cfg.openai.api_key_env),
            models=[ModelConfig(id=m.id, name=m.name) for m in cfg.openai.models],
            timeout_s=cfg.openai.timeout_s,
            max_completion_tokens=cfg.openai.max_completion_tokens,
        ),
        GeminiProvider(
            api_key=resolve_secret(cfg.gemini.api_key_env),
            models=[ModelConfig(id=m.id, name=m.name) for m in cfg.gemini.models],
            base_url=cfg.gemini.base_url,
            timeout_s=cfg.gemini.timeout_s,
            max_output_tokens=cfg.gemini.max_output_tokens,
        ),
        OllamaProvider(
            base_url=resolve_ollama_base_url(cfg.ollama),
            proxy_prefix=cfg.ollama.proxy_prefix,
            discovery_timeout_s=cfg.ollama.discovery_timeout_s,
            generate_timeout_s=cfg.ollama.generate_timeout_s,
            cache_ttl_ms=cfg.ollama.cache_ttl_s * 1000.0,
        ),
    ]


def build_registry(config: Optional[ProvidersConfig] = None) -> ProviderRegistry:
    return ProviderRegistry(factory=lambda: build_default_providers(config))
