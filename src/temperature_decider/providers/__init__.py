"""
Provider abstraction over next-token log-probability backends.

This subpackage provides:
- a shared contract (LLMProvider) and normalized result types
- adapters for OpenAI, Google Gemini and a local Ollama server
- a registry that resolves providers by id and reports their availability

Backend-specific request and response shapes stay inside each adapter;
callers only ever see LogprobsResponse or ProviderError.
"""

from .cancellation import CancellationToken, run_cancellable
from .errors import (
    DEFAULT_RETRY_AFTER_MS,
    ErrorKind,
    ProviderError,
    ProviderNotFoundError,
    parse_retry_after_ms,
)
from .types import (
    DEFAULT_TOP_K,
    AvailabilityCache,
    LLMProvider,
    LogprobsRequest,
    LogprobsResponse,
    ModelConfig,
    ProviderWithStatus,
    TokenProbability,
)
from .probability import (
    format_probability,
    logprob_to_prob,
    prob_to_logprob,
    sort_by_probability,
    temperature_color,
)
from .prompts import SYSTEM_PROMPT, combined_prompt, user_prompt
from .openai_provider import OpenAIProvider
from .gemini_provider import GeminiProvider
from .ollama_provider import OllamaProvider
from .registry import ProviderRegistry, build_default_providers, build_registry

__all__ = [
    "CancellationToken",
    "run_cancellable",
    "DEFAULT_RETRY_AFTER_MS",
    "ErrorKind",
    "ProviderError",
    "ProviderNotFoundError",
    "parse_retry_after_ms",
    "DEFAULT_TOP_K",
    "AvailabilityCache",
    "LLMProvider",
    "LogprobsRequest",
    "LogprobsResponse",
    "ModelConfig",
    "ProviderWithStatus",
    "TokenProbability",
    "format_probability",
    "logprob_to_prob",
    "prob_to_logprob",
    "sort_by_probability",
    "temperature_color",
    "SYSTEM_PROMPT",
    "combined_prompt",
    "user_prompt",
    "OpenAIProvider",
    "GeminiProvider",
    "OllamaProvider",
    "ProviderRegistry",
    "build_default_providers",
    "build_registry",
]
