from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

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
    synthetic_response_tokens,
)

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"

GEMINI_MODELS: List[ModelConfig] = [
    ModelConfig(id="gemini-2.0-flash-exp", name="Gemini 2.0 Flash"),
]


def _extract_text(candidate: Dict[str, Any]) -> str:
    content = candidate.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))


def _extract_candidates(logprobs_result: Any) -> List[Dict[str, Any]]:
    """
    Alternatives for the first generated position.

    Preferred: logprobsResult.topCandidates[0].candidates
    Fallback:  logprobsResult.chosenCandidates
    """
    if not isinstance(logprobs_result, dict):
        return []

    top = logprobs_result.get("topCandidates")
    if isinstance(top, list) and top and isinstance(top[0], dict):
        first = top[0].get("candidates")
        if isinstance(first, list) and first:
            return [c for c in first if isinstance(c, dict)]

    chosen = logprobs_result.get("chosenCandidates")
    if isinstance(chosen, list) and chosen:
        return [c for c in chosen if isinstance(c, dict)]

    return []


def _extract_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    return response.text


class GeminiProvider:
    """Hosted generateContent backend; logprobs nest under candidates[0].logprobsResult."""

    id = "gemini"
    name = "Google Gemini"

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        models: Optional[Sequence[ModelConfig]] = None,
        base_url: str = GEMINI_BASE_URL,
        timeout_s: float = 30.0,
        max_output_tokens: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._models = list(models) if models is not None else list(GEMINI_MODELS)
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._max_output_tokens = max_output_tokens
        self._transport = transport

    @property
    def models(self) -> List[ModelConfig]:
        return list(self._models)

    def _require_key(self) -> str:
        if not self._api_key:
            raise ProviderError(
                message="Google AI API key not configured. Set GOOGLE_AI_API_KEY in your environment.",
                kind=ErrorKind.API_KEY_MISSING,
                provider=self.id,
                retryable=False,
            )
        return self._api_key

    async def _post(self, model: str, api_key: str, payload: Dict[str, Any]) -> httpx.Response:
        # One client per call: pooled connections are bound to the loop that opened them.
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_s,
            transport=self._transport,
        ) as client:
            return await client.post(
                f"/v1beta/models/{model}:generateContent",
                headers={"x-goog-api-key": api_key},
                json=payload,
            )

    async def is_available(self) -> bool:
        return bool(self._api_key)

    def _build_payload(self, request: LogprobsRequest) -> Dict[str, Any]:
        return {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [
                {"role": "user", "parts": [{"text": user_prompt(request.prompt)}]},
            ],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": self._max_output_tokens,
                "responseLogprobs": True,
                "logprobs": request.top_k,
            },
        }

    def _error_for_status(self, response: httpx.Response, model: str) -> ProviderError:
        status = response.status_code
        detail = _extract_error_message(response)

        if status in (401, 403) or (status == 400 and "api key" in detail.lower()):
            return ProviderError(
                message="Invalid Google AI API key. Please check your GOOGLE_AI_API_KEY.",
                kind=ErrorKind.API_KEY_MISSING,
                provider=self.id,
                retryable=False,
            )
        if status == 429:
            return ProviderError(
                message="Rate limited by Google AI. Please wait before trying again.",
                kind=ErrorKind.RATE_LIMITED,
                provider=self.id,
                retryable=True,
                retry_after_ms=parse_retry_after_ms(response.headers),
            )
        if status == 404:
            return ProviderError(
                message=f"Gemini does not know model '{model}': {detail}",
                kind=ErrorKind.MODEL_NOT_FOUND,
                provider=self.id,
                retryable=False,
            )
        return ProviderError(
            message=f"Gemini API error (HTTP {status}): {detail}",
            kind=ErrorKind.UNKNOWN,
            provider=self.id,
            retryable=status >= 500,
        )

    async def get_logprobs(self, request: LogprobsRequest) -> LogprobsResponse:
        start = time.perf_counter()
        model = request.model

        if find_model(self._models, model) is None:
            raise ProviderError(
                message=f"Model '{model}' not found in Gemini provider",
                kind=ErrorKind.MODEL_NOT_FOUND,
                provider=self.id,
                retryable=False,
            )

        api_key = self._require_key()
        payload = self._build_payload(request)
        logger.debug("gemini request model=%s temperature=%s top_k=%s", model, request.temperature, request.top_k)

        try:
            response = await run_cancellable(self._post(model, api_key, payload), request.cancel_token)
        except httpx.TransportError as e:
            raise ProviderError(
                message=f"Network error contacting Google AI: {e}",
                kind=ErrorKind.NETWORK_ERROR,
                provider=self.id,
                retryable=True,
            ) from e
        except Exception as e:
            raise ProviderError(
                message=f"Gemini request failed: {e}",
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
                message=f"Malformed JSON response from Gemini: {e}",
                kind=ErrorKind.INVALID_RESPONSE,
                provider=self.id,
                retryable=False,
            ) from e

        candidates = data.get("candidates") if isinstance(data, dict) else None
        candidate = candidates[0] if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict) else {}
        text = _extract_text(candidate)
        logprobs_result = candidate.get("logprobsResult")

        chosen = logprobs_result.get("chosenCandidates") if isinstance(logprobs_result, dict) else None
        selected_token = text
        if isinstance(chosen, list) and chosen and isinstance(chosen[0], dict) and chosen[0].get("token"):
            selected_token = str(chosen[0]["token"])

        alternatives = _extract_candidates(logprobs_result)
        if not alternatives:
            # Some models silently omit logprobs; keep the plain text as a certain token.
            logger.info("gemini returned no logprobs for model=%s; using synthetic token", model)
            return LogprobsResponse(
                tokens=synthetic_response_tokens(text),
                model=model,
                latency_ms=elapsed_ms(start),
                selected_token=text,
                degraded=True,
            )

        try:
            tokens = [
                TokenProbability.from_logprob(str(c.get("token", "")), c.get("logProbability"))
                for c in alternatives
            ]
        except (TypeError, ValueError) as e:
            raise ProviderError(
                message=f"Malformed logprob entry in Gemini response: {e}",
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
