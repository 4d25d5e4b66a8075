from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from .cancellation import run_cancellable
from .errors import ErrorKind, ProviderError, parse_retry_after_ms
from .probability import sort_by_probability
from .prompts import combined_prompt
from .types import (
    AvailabilityCache,
    LogprobsRequest,
    LogprobsResponse,
    ModelConfig,
    TokenProbability,
    elapsed_ms,
    find_model,
    synthetic_response_tokens,
)

logger = logging.getLogger(__name__)

OLLAMA_BASE_URL = "http://localhost:11434"
CACHE_TTL_MS = 30_000
DISCOVERY_TIMEOUT_S = 5.0

_NAME_SEPARATORS = re.compile(r"[-_.]")


# -----------------------------
# Model discovery
# -----------------------------

def format_model_name(raw_name: str, parameter_size: Optional[str] = None) -> str:
    """
    Friendly label for a local model id.

      "llama3.2:latest", "3.2B" -> "Llama3 2 (3.2B)"
      "qwen2.5-coder:7b"        -> "Qwen2 5 Coder"
    """
    base = raw_name.split(":", 1)[0] or raw_name
    clean = " ".join(part[:1].upper() + part[1:] for part in _NAME_SEPARATORS.split(base))
    if parameter_size:
        return f"{clean} ({parameter_size})"
    return clean


def _model_from_tag(entry: Any) -> Optional[ModelConfig]:
    if not isinstance(entry, dict):
        return None
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        return None
    details = entry.get("details")
    parameter_size = details.get("parameter_size") if isinstance(details, dict) else None
    return ModelConfig(id=name, name=format_model_name(name, parameter_size or None))


# -----------------------------
# Generate response shapes
# -----------------------------

@dataclass(frozen=True)
class CompletionProbabilities:
    """Direct probabilities: completion_probabilities[0].probs -> [{token, prob}]."""
    probs: List[Dict[str, Any]]


@dataclass(frozen=True)
class TopLogprobs:
    """Log-probabilities: logprobs[0].top_logprobs -> [{token, logprob}]."""
    top_logprobs: List[Dict[str, Any]]


@dataclass(frozen=True)
class NoDistribution:
    pass


GenerateShape = Union[CompletionProbabilities, TopLogprobs, NoDistribution]


def parse_generate_shape(data: Dict[str, Any]) -> GenerateShape:
    """Classify a /api/generate payload; the two distribution shapes never appear together."""
    cp = data.get("completion_probabilities")
    if isinstance(cp, list) and cp and isinstance(cp[0], dict):
        probs = cp[0].get("probs")
        if isinstance(probs, list) and probs:
            return CompletionProbabilities(probs=[p for p in probs if isinstance(p, dict)])

    lp = data.get("logprobs")
    if isinstance(lp, list) and lp and isinstance(lp[0], dict):
        top = lp[0].get("top_logprobs")
        if isinstance(top, list) and top:
            return TopLogprobs(top_logprobs=[t for t in top if isinstance(t, dict)])

    return NoDistribution()


def normalize_shape(shape: GenerateShape) -> List[TokenProbability]:
    """Tokens for a matched shape; empty when nothing usable was reported."""
    if isinstance(shape, CompletionProbabilities):
        tokens = []
        for p in shape.probs:
            prob = p.get("prob")
            if not isinstance(prob, (int, float)) or not 0.0 < prob <= 1.0:
                # ln(0) is undefined; such entries carry no ranking information.
                continue
            tokens.append(TokenProbability.from_probability(str(p.get("token", "")), prob))
        return tokens

    if isinstance(shape, TopLogprobs):
        tokens = []
        for t in shape.top_logprobs:
            logprob = t.get("logprob")
            if not isinstance(logprob, (int, float)) or not math.isfinite(logprob) or logprob > 0:
                # Outside (-inf, 0] the probability would leave (0, 1].
                continue
            tokens.append(TokenProbability.from_logprob(str(t.get("token", "")), logprob))
        return tokens

    return []


# -----------------------------
# Provider
# -----------------------------

class OllamaProvider:
    """
    Local Ollama server.

    Models are discovered from /api/tags and cached for CACHE_TTL_MS; an
    unreachable server simply reports unavailable.
    """

    id = "ollama"
    name = "Ollama (Local)"

    def __init__(
        self,
        *,
        base_url: str = OLLAMA_BASE_URL,
        proxy_prefix: Optional[str] = None,
        discovery_timeout_s: float = DISCOVERY_TIMEOUT_S,
        generate_timeout_s: float = 60.0,
        cache_ttl_ms: float = CACHE_TTL_MS,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._proxy_prefix = proxy_prefix.rstrip("/") if proxy_prefix else None
        self._discovery_timeout_s = discovery_timeout_s
        self._generate_timeout_s = generate_timeout_s
        self._cache_ttl_ms = cache_ttl_ms
        self._transport = transport
        self._clock = clock
        self._models: List[ModelConfig] = []
        self._cache: Optional[AvailabilityCache] = None

    @property
    def models(self) -> List[ModelConfig]:
        return list(self._models)

    @property
    def base_url(self) -> str:
        return self._base_url

    def api_url(self, path: str) -> str:
        # Behind a development proxy the same paths are served under a prefix.
        if self._proxy_prefix:
            return f"{self._proxy_prefix}{path}"
        return f"{self._base_url}{path}"

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    async def _fetch_models(self) -> List[ModelConfig]:
        try:
            # Fresh client per call: callers may drive us from more than one event loop.
            async with httpx.AsyncClient(transport=self._transport, timeout=self._discovery_timeout_s) as client:
                response = await client.get(self.api_url("/api/tags"))
            if response.status_code != 200:
                return []
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("ollama discovery failed at %s: %s", self._base_url, e)
            return []

        entries = data.get("models") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            return []
        return [m for m in (_model_from_tag(e) for e in entries) if m is not None]

    async def is_available(self) -> bool:
        cache = self._cache
        if cache is not None and self._now_ms() - cache.timestamp_ms < self._cache_ttl_ms:
            return cache.available

        try:
            models = await self._fetch_models()
        except Exception as e:
            logger.debug("ollama availability check failed: %s", e)
            models = []

        available = len(models) > 0
        self._models = models
        self._cache = AvailabilityCache(available=available, models=list(models), timestamp_ms=self._now_ms())
        return available

    async def refresh_models(self) -> List[ModelConfig]:
        """Force discovery regardless of the cache age."""
        models = await self._fetch_models()
        self._models = models
        self._cache = AvailabilityCache(available=len(models) > 0, models=list(models), timestamp_ms=self._now_ms())
        return list(models)

    async def _generate(self, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(transport=self._transport, timeout=self._generate_timeout_s) as client:
            return await client.post(self.api_url("/api/generate"), json=payload)

    def _error_for_status(self, response: httpx.Response, model: str) -> ProviderError:
        status = response.status_code
        if status == 404:
            return ProviderError(
                message=f"Model '{model}' not found. Run 'ollama pull {model}' to download it.",
                kind=ErrorKind.MODEL_NOT_FOUND,
                provider=self.id,
                retryable=False,
            )
        if status == 429:
            return ProviderError(
                message="Ollama is busy. Please wait before trying again.",
                kind=ErrorKind.RATE_LIMITED,
                provider=self.id,
                retryable=True,
                retry_after_ms=parse_retry_after_ms(response.headers),
            )
        return ProviderError(
            message=f"Ollama API error: {response.text}",
            kind=ErrorKind.UNKNOWN,
            provider=self.id,
            retryable=status >= 500,
        )

    async def get_logprobs(self, request: LogprobsRequest) -> LogprobsResponse:
        start = time.perf_counter()
        model = request.model

        # Routed through the token so an already-cancelled request sends nothing.
        if not await run_cancellable(self.is_available(), request.cancel_token):
            raise ProviderError(
                message=f"Ollama is not running at {self._base_url}. Please start Ollama first.",
                kind=ErrorKind.SERVICE_UNAVAILABLE,
                provider=self.id,
                retryable=True,
            )

        if find_model(self._models, model) is None:
            known = ", ".join(m.id for m in self._models)
            raise ProviderError(
                message=f"Model '{model}' not found. Available models: {known}",
                kind=ErrorKind.MODEL_NOT_FOUND,
                provider=self.id,
                retryable=False,
            )

        payload = {
            "model": model,
            "prompt": combined_prompt(request.prompt),
            "stream": False,
            "options": {"temperature": request.temperature, "num_predict": 1},
            "logprobs": True,
            "top_logprobs": request.top_k,
            "raw": False,
        }
        logger.debug("ollama request model=%s temperature=%s top_k=%s", model, request.temperature, request.top_k)

        try:
            response = await run_cancellable(self._generate(payload), request.cancel_token)
        except httpx.ConnectError as e:
            raise ProviderError(
                message=f"Cannot connect to Ollama at {self._base_url}. Is it running?",
                kind=ErrorKind.NETWORK_ERROR,
                provider=self.id,
                retryable=True,
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                message=f"Network error contacting Ollama: {e}",
                kind=ErrorKind.NETWORK_ERROR,
                provider=self.id,
                retryable=True,
            ) from e
        except Exception as e:
            raise ProviderError(
                message=f"Ollama error: {e}",
                kind=ErrorKind.UNKNOWN,
                provider=self.id,
                retryable=True,
            ) from e

        if response.status_code != 200:
            raise self._error_for_status(response, model)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                message=f"Malformed JSON response from Ollama: {e}",
                kind=ErrorKind.INVALID_RESPONSE,
                provider=self.id,
                retryable=False,
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                message="Unexpected Ollama response: expected a JSON object.",
                kind=ErrorKind.INVALID_RESPONSE,
                provider=self.id,
                retryable=False,
            )

        text = data.get("response")
        selected_token = text if isinstance(text, str) else ""

        tokens = normalize_shape(parse_generate_shape(data))
        degraded = not tokens
        if degraded:
            logger.info("ollama returned no logprobs for model=%s; using synthetic token", model)
            tokens = synthetic_response_tokens(selected_token)

        return LogprobsResponse(
            tokens=sort_by_probability(tokens),
            model=model,
            latency_ms=elapsed_ms(start),
            selected_token=selected_token,
            degraded=degraded,
        )
