from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence, Tuple

from temperature_decider.providers.cancellation import CancellationToken
from temperature_decider.providers.errors import ErrorKind, ProviderError
from temperature_decider.providers.registry import ProviderRegistry
from temperature_decider.providers.types import (
    DEFAULT_TOP_K,
    LogprobsRequest,
    LogprobsResponse,
    ProviderWithStatus,
)

logger = logging.getLogger(__name__)

MIN_PROMPT_LENGTH = 1
MAX_PROMPT_LENGTH = 2000

ProbeStatus = Literal["success", "error", "cancelled"]


class PromptValidationError(ValueError):
    pass


def validate_prompt(prompt: str) -> str:
    if not isinstance(prompt, str):
        raise PromptValidationError(f"prompt must be a string, got {type(prompt)}")
    if len(prompt) < MIN_PROMPT_LENGTH:
        raise PromptValidationError("prompt must not be empty")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise PromptValidationError(f"prompt is longer than {MAX_PROMPT_LENGTH} characters ({len(prompt)})")
    return prompt


@dataclass(frozen=True)
class ErrorView:
    """What the presentation layer needs to render a failure."""
    message: str
    kind: ErrorKind
    provider: str
    offer_retry: bool
    cooldown_ms: Optional[int] = None

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMITED

    @classmethod
    def from_error(cls, error: ProviderError) -> "ErrorView":
        return cls(
            message=error.message,
            kind=error.kind,
            provider=error.provider,
            offer_retry=error.retryable,
            cooldown_ms=error.retry_after_ms if error.kind is ErrorKind.RATE_LIMITED else None,
        )


@dataclass(frozen=True)
class ProbeResult:
    status: ProbeStatus
    temperature: float
    response: Optional[LogprobsResponse] = None
    error_view: Optional[ErrorView] = None


class ProbeSession:
    """
    Issues next-token queries one at a time.

    A new submit() cancels whatever request is still in flight; the
    superseded call then resolves with status "cancelled".
    """

    def __init__(self, registry: ProviderRegistry, *, default_top_k: int = DEFAULT_TOP_K) -> None:
        self._registry = registry
        self._default_top_k = default_top_k
        self._token: Optional[CancellationToken] = None
        self._task: Optional[asyncio.Future[LogprobsResponse]] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._token is not None:
            self._token.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._token = None
        self._task = None

    async def submit(
        self,
        prompt: str,
        provider_id: str,
        model_id: str,
        temperature: float,
        top_k: Optional[int] = None,
    ) -> ProbeResult:
        validate_prompt(prompt)
        provider = self._registry.get(provider_id)

        self.cancel()
        token = CancellationToken()
        request = LogprobsRequest(
            prompt=prompt,
            model=model_id,
            temperature=temperature,
            top_k=top_k if top_k is not None else self._default_top_k,
            cancel_token=token,
        )
        task = asyncio.ensure_future(provider.get_logprobs(request))
        self._token, self._task = token, task

        try:
            response = await task
        except asyncio.CancelledError:
            if not token.cancelled:
                raise
            logger.debug("request to %s/%s superseded", provider_id, model_id)
            return ProbeResult(status="cancelled", temperature=temperature)
        except ProviderError as e:
            logger.debug("request to %s/%s failed: %s", provider_id, model_id, e)
            return ProbeResult(status="error", temperature=temperature, error_view=ErrorView.from_error(e))
        except Exception as e:
            logger.exception("unexpected failure from provider %s", provider_id)
            view = ErrorView(
                message=str(e) or "An unknown error occurred",
                kind=ErrorKind.UNKNOWN,
                provider=provider_id,
                offer_retry=True,
            )
            return ProbeResult(status="error", temperature=temperature, error_view=view)
        finally:
            if self._task is task:
                self._token, self._task = None, None

        return ProbeResult(status="success", temperature=temperature, response=response)

    async def provider_status(self) -> List[ProviderWithStatus]:
        return await self._registry.get_with_status()


def default_selection(statuses: Sequence[ProviderWithStatus]) -> Optional[Tuple[str, str]]:
    """(provider_id, model_id) of the first available provider that has a model."""
    for status in statuses:
        if not status.available:
            continue
        models = status.provider.models
        if models:
            return status.provider.id, models[0].id
    return None
