from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import openai

from .cancellation import run_cancellable
from .errors import ErrorKind, ProviderError, parse_retry_after_ms
from .probability import sort_by_probability
from .prompts import SYSTEM_PROMPT, user_prompt
from .types import (
    LogprobsRequest,
    LogprobsResponse,
    ModelConfig,
    TokenProbability,
    elapsed_ms,
    find_model,
    get_field,
)

logger = logging.getLogger(__name__)

OPENAI_MODELS: List[ModelConfig] = [
    ModelConfig(id="gpt-5.2", name="GPT-5.2"),
    ModelConfig(id="gpt-4o", name="GPT-4o"),
]


def _extract_selected_text(resp: Any) -> str:
    choices = get_field(resp, "choices", None) or []
    if not choices:
        return ""
    message = get_field(choices[0], "message", None)
    content = get_field(message, "content", None)
    return content if isinstance(content, str) else ""


def _extract_top_logprobs(resp: Any) -> Optional[Sequence[Any]]:
    """
    Top alternatives for the first generated token:
      choices[0].logprobs.content[0].top_logprobs -> [{token, logprob}, ...]

    Returns None when any level of that structure is missing.
    """
    choices = get_field(resp, "choices", None)
    if not isinstance(choices, (list, tuple)) or not choices:
        return None
    logprobs = get_field(choices[0], "logprobs", None)
    content = get_field(logprobs, "content", None)
    if not isinstance(content, (list, tuple)) or not content:
        return None
    top = get_field(content[0], "top_logprobs", None)
    if not isinstance(top, (list, tuple)) or not top:
        return None
    return top


class OpenAIProvider:
    """Hosted chat-completions backend with native top-logprobs support."""

    id = "openai"
    name = "OpenAI"

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        models: Optional[Sequence[ModelConfig]] = None,
        timeout_s: float = 30.0,
        max_completion_tokens: int = 10,
        client: Any | None = None,
    ) -> None:
        self._api_key = api_key
        self._models = list(models) if models is not None else list(OPENAI_MODELS)
        self._timeout_s = timeout_s
        self._max_completion_tokens = max_completion_tokens
        self._client = client
        self._injected = client is not None
        self._client_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def models(self) -> List[ModelConfig]:
        return list(self._models)

    def _get_client(self) -> Any:
        if self._injected:
            return self._client
        if not self._api_key:
            raise ProviderError(
                message="OpenAI API key not configured. Set OPENAI_API_KEY in your environment.",
                kind=ErrorKind.API_KEY_MISSING,
                provider=self.id,
                retryable=False,
            )
        # The SDK pools connections per event loop; rebuild when the loop changes.
        loop = asyncio.get_running_loop()
        if self._client is None or self._client_loop is not loop:
            # Retries are the caller's decision.
            self._client = openai.AsyncOpenAI(
                api_key=self._api_key,
                timeout=self._timeout_s,
                max_retries=0,
            )
            self._client_loop = loop
        return self._client

    async def is_available(self) -> bool:
        return bool(self._api_key) or self._injected

    async def get_logprobs(self, request: LogprobsRequest) -> LogprobsResponse:
        start = time.perf_counter()
        model = request.model

        if find_model(self._models, model) is None:
            raise ProviderError(
                message=f"Model '{model}' not found in OpenAI provider",
                kind=ErrorKind.MODEL_NOT_FOUND,
                provider=self.id,
                retryable=False,
            )

        client = self._get_client()

        req: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt(request.prompt)},
            ],
            "max_completion_tokens": self._max_completion_tokens,
            "temperature": request.temperature,
            "logprobs": True,
            "top_logprobs": request.top_k,
        }
        logger.debug("openai request model=%s temperature=%s top_k=%s", model, request.temperature, request.top_k)

        try:
            resp = await run_cancellable(client.chat.completions.create(**req), request.cancel_token)
        except openai.RateLimitError as e:
            raise ProviderError(
                message="Rate limited by OpenAI. Please wait before trying again.",
                kind=ErrorKind.RATE_LIMITED,
                provider=self.id,
                retryable=True,
                retry_after_ms=parse_retry_after_ms(_headers_of(e)),
            ) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ProviderError(
                message="Invalid OpenAI API key. Please check your OPENAI_API_KEY.",
                kind=ErrorKind.API_KEY_MISSING,
                provider=self.id,
                retryable=False,
            ) from e
        except openai.NotFoundError as e:
            raise ProviderError(
                message=f"OpenAI does not know model '{model}': {e}",
                kind=ErrorKind.MODEL_NOT_FOUND,
                provider=self.id,
                retryable=False,
            ) from e
        except openai.APIStatusError as e:
            raise ProviderError(
                message=f"OpenAI API error: {e}",
                kind=ErrorKind.UNKNOWN,
                provider=self.id,
                retryable=e.status_code >= 500,
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderError(
                message=f"Network error: {e}",
                kind=ErrorKind.NETWORK_ERROR,
                provider=self.id,
                retryable=True,
            ) from e
        except Exception as e:
            raise ProviderError(
                message=f"OpenAI request failed: {e}",
                kind=ErrorKind.UNKNOWN,
                provider=self.id,
                retryable=True,
            ) from e

        top = _extract_top_logprobs(resp)
        if top is None:
            raise ProviderError(
                message="No logprobs in response. The model may not support logprobs.",
                kind=ErrorKind.INVALID_RESPONSE,
                provider=self.id,
                retryable=False,
            )

        selected_token = _extract_selected_text(resp)

        tokens: List[TokenProbability] = []
        try:
            for i, item in enumerate(top):
                # The selected text and the alternatives list are reported separately;
                # the first alternative is labelled with the text actually emitted.
                label = selected_token if i == 0 and selected_token else get_field(item, "token", "")
                tokens.append(TokenProbability.from_logprob(str(label), get_field(item, "logprob", None)))
        except (TypeError, ValueError) as e:
            raise ProviderError(
                message=f"Malformed logprob entry in OpenAI response: {e}",
                kind=ErrorKind.INVALID_RESPONSE,
                provider=self.id,
                retryable=False,
            ) from e

        return LogprobsResponse(
            tokens=sort_by_probability(tokens),
            model=model,
            latency_ms=elapsed_ms(start),
            selected_token=selected_token,
        )


def _headers_of(e: Exception) -> Any:
    response = getattr(e, "response", None)
    return getattr(response, "headers", None)
