from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from .cancellation import CancellationToken
from .probability import logprob_to_prob, prob_to_logprob

DEFAULT_TOP_K = 5
SYNTHETIC_EMPTY_TOKEN = "(empty)"


@dataclass(frozen=True)
class ModelConfig:
    id: str
    name: str


@dataclass(frozen=True)
class TokenProbability:
    """
    One candidate next token.

    probability == exp(logprob) always holds to floating-point precision;
    use the constructors below rather than filling both fields by hand.
    """
    token: str
    probability: float
    logprob: float

    @classmethod
    def from_logprob(cls, token: str, logprob: float) -> "TokenProbability":
        lp = float(logprob)
        return cls(token=token, probability=logprob_to_prob(lp), logprob=lp)

    @classmethod
    def from_probability(cls, token: str, probability: float) -> "TokenProbability":
        p = float(probability)
        return cls(token=token, probability=p, logprob=prob_to_logprob(p))


@dataclass(frozen=True)
class LogprobsRequest:
    prompt: str
    model: str
    temperature: float
    top_k: int = DEFAULT_TOP_K
    cancel_token: Optional[CancellationToken] = field(default=None, compare=False)


@dataclass(frozen=True)
class LogprobsResponse:
    """
    Normalized result of a single next-token query.

    - tokens: ranked candidates, highest probability first (never empty)
    - selected_token: what the backend actually emitted (may not be tokens[0])
    - degraded: the backend returned no distribution and tokens holds a
      single synthetic entry with probability 1.0
    """
    tokens: List[TokenProbability]
    model: str
    latency_ms: int
    selected_token: str
    degraded: bool = False


@dataclass(frozen=True)
class AvailabilityCache:
    available: bool
    models: List[ModelConfig]
    timestamp_ms: float


@runtime_checkable
class LLMProvider(Protocol):
    """Contract every backend adapter satisfies."""

    id: str
    name: str

    @property
    def models(self) -> List[ModelConfig]:
        ...

    async def is_available(self) -> bool:
        """Never raises; internal failures report False."""
        ...

    async def get_logprobs(self, request: LogprobsRequest) -> LogprobsResponse:
        """
        Return the next-token distribution.

        Raises ProviderError for every failure. Cancellation propagates as
        asyncio.CancelledError and is never wrapped.
        """
        ...


@dataclass(frozen=True)
class ProviderWithStatus:
    provider: LLMProvider
    available: bool
    error: Optional[str] = None


def find_model(models: Sequence[ModelConfig], model_id: str) -> Optional[ModelConfig]:
    for m in models:
        if m.id == model_id:
            return m
    return None


def synthetic_response_tokens(text: str) -> List[TokenProbability]:
    """Single certain token standing in for a missing distribution."""
    return [TokenProbability(token=text or SYNTHETIC_EMPTY_TOKEN, probability=1.0, logprob=0.0)]


def elapsed_ms(start: float) -> int:
    """Milliseconds since a time.perf_counter() start, rounded."""
    return max(0, int(round((time.perf_counter() - start) * 1000)))


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read dict key or attribute."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)
