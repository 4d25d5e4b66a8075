from __future__ import annotations

import asyncio
import math
import os
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import openai
import pytest

from temperature_decider.providers import CancellationToken, ErrorKind, LogprobsRequest, ProviderError
from temperature_decider.providers.openai_provider import OpenAIProvider
from temperature_decider.providers.prompts import SYSTEM_PROMPT


# ---- Fake AsyncOpenAI client ----

def make_chat_response(content: str, top: List[tuple]) -> Any:
    """Shape of ChatCompletion: choices[0].message.content + choices[0].logprobs.content[0].top_logprobs."""
    top_logprobs = [SimpleNamespace(token=t, logprob=lp) for t, lp in top]
    first = SimpleNamespace(token=top[0][0] if top else content, logprob=top[0][1] if top else 0.0, top_logprobs=top_logprobs)
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=content),
                logprobs=SimpleNamespace(content=[first]),
            )
        ]
    )


class FakeCompletions:
    def __init__(self, response: Any = None, error: Optional[BaseException] = None, delay: float = 0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeClient:
    def __init__(self, completions: FakeCompletions):
        self.chat = SimpleNamespace(completions=completions)


def _provider(completions: FakeCompletions) -> OpenAIProvider:
    return OpenAIProvider(api_key="sk-test", client=FakeClient(completions))


def _request(**overrides) -> LogprobsRequest:
    fields = dict(prompt="The quick brown fox", model="gpt-4o", temperature=0.7, top_k=5)
    fields.update(overrides)
    return LogprobsRequest(**fields)


def _status_error(cls, status: int, headers: Optional[Dict[str, str]] = None):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status, request=request, headers=headers or {})
    return cls(f"HTTP {status}", response=response, body=None)


# ---- Success path ----

def test_end_to_end_five_alternatives():
    completions = FakeCompletions(
        make_chat_response(
            " jumps",
            [(" jumps", -0.1), (" runs", -0.5), (" leaps", -1.2), (" is", -2.0), (" was", -3.0)],
        )
    )
    res = asyncio.run(_provider(completions).get_logprobs(_request()))

    assert res.model == "gpt-4o"
    assert res.selected_token == " jumps"
    assert res.latency_ms >= 0
    assert res.degraded is False
    assert len(res.tokens) == 5
    assert res.tokens[0].probability == pytest.approx(math.exp(-0.1))
    assert res.tokens[0].probability == pytest.approx(0.905, abs=1e-3)
    probs = [t.probability for t in res.tokens]
    assert probs == sorted(probs, reverse=True)
    for t in res.tokens:
        assert t.probability == pytest.approx(math.exp(t.logprob))


def test_request_shape():
    completions = FakeCompletions(make_chat_response("x", [("x", -0.2)]))
    asyncio.run(_provider(completions).get_logprobs(_request(temperature=0.3, top_k=7)))

    [req] = completions.calls
    assert req["model"] == "gpt-4o"
    assert req["logprobs"] is True
    assert req["top_logprobs"] == 7
    assert req["temperature"] == 0.3
    assert req["max_completion_tokens"] == 10
    assert req["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert req["messages"][1]["role"] == "user"
    assert "The quick brown fox" in req["messages"][1]["content"]


def test_selected_text_labels_first_alternative():
    # The alternatives list reports raw sub-word tokens; the emitted word replaces the first label.
    completions = FakeCompletions(make_chat_response("jumps", [("j", -0.3), (" runs", -1.0)]))
    res = asyncio.run(_provider(completions).get_logprobs(_request()))

    assert [t.token for t in res.tokens] == ["jumps", " runs"]
    assert res.tokens[0].logprob == -0.3


def test_empty_content_keeps_backend_label():
    completions = FakeCompletions(make_chat_response("", [("j", -0.3)]))
    res = asyncio.run(_provider(completions).get_logprobs(_request()))
    assert res.tokens[0].token == "j"
    assert res.selected_token == ""


def test_dict_shaped_response_is_accepted():
    resp = {
        "choices": [
            {
                "message": {"content": " dog"},
                "logprobs": {"content": [{"token": " dog", "top_logprobs": [{"token": " dog", "logprob": -0.05}]}]},
            }
        ]
    }
    res = asyncio.run(_provider(FakeCompletions(resp)).get_logprobs(_request()))
    assert res.tokens[0].token == " dog"


# ---- Contract failures without network ----

def test_unknown_model_makes_no_call():
    completions = FakeCompletions(make_chat_response("x", [("x", -0.1)]))
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_provider(completions).get_logprobs(_request(model="gpt-nope")))

    assert ei.value.kind is ErrorKind.MODEL_NOT_FOUND
    assert ei.value.retryable is False
    assert ei.value.provider == "openai"
    assert completions.calls == []


def test_missing_key_raises_before_building_client(monkeypatch):
    import temperature_decider.providers.openai_provider as mod

    built = []
    monkeypatch.setattr(mod.openai, "AsyncOpenAI", lambda **kwargs: built.append(kwargs))

    provider = OpenAIProvider(api_key=None)
    assert asyncio.run(provider.is_available()) is False

    with pytest.raises(ProviderError) as ei:
        asyncio.run(provider.get_logprobs(_request()))
    assert ei.value.kind is ErrorKind.API_KEY_MISSING
    assert ei.value.retryable is False
    assert built == []


def test_client_is_built_lazily_without_retries(monkeypatch):
    import temperature_decider.providers.openai_provider as mod

    built = []

    def fake_async_openai(**kwargs):
        built.append(kwargs)
        return FakeClient(FakeCompletions(make_chat_response("x", [("x", -0.1)])))

    monkeypatch.setattr(mod.openai, "AsyncOpenAI", fake_async_openai)

    provider = OpenAIProvider(api_key="sk-test", timeout_s=12.0)
    assert built == []

    async def twice():
        await provider.get_logprobs(_request())
        await provider.get_logprobs(_request())

    asyncio.run(twice())
    assert built == [{"api_key": "sk-test", "timeout": 12.0, "max_retries": 0}]


def test_client_is_rebuilt_for_a_new_event_loop(monkeypatch):
    import temperature_decider.providers.openai_provider as mod

    clients = []

    def fake_async_openai(**kwargs):
        client = FakeClient(FakeCompletions(make_chat_response("x", [("x", -0.1)])))
        clients.append(client)
        return client

    monkeypatch.setattr(mod.openai, "AsyncOpenAI", fake_async_openai)

    provider = OpenAIProvider(api_key="sk-test")
    asyncio.run(provider.get_logprobs(_request()))
    asyncio.run(provider.get_logprobs(_request()))

    assert len(clients) == 2
    assert [len(c.chat.completions.calls) for c in clients] == [1, 1]


# ---- Response validation ----

@pytest.mark.parametrize(
    "resp",
    [
        SimpleNamespace(choices=[]),
        SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="x"), logprobs=None)]),
        SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="x"), logprobs=SimpleNamespace(content=[]))]),
        make_chat_response("x", []),
    ],
)
def test_missing_logprobs_is_invalid_response(resp):
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_provider(FakeCompletions(resp)).get_logprobs(_request()))
    assert ei.value.kind is ErrorKind.INVALID_RESPONSE
    assert ei.value.retryable is False


# ---- Error mapping ----

def test_rate_limit_uses_retry_after_header():
    err = _status_error(openai.RateLimitError, 429, {"retry-after": "12"})
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_provider(FakeCompletions(error=err)).get_logprobs(_request()))

    assert ei.value.kind is ErrorKind.RATE_LIMITED
    assert ei.value.retryable is True
    assert ei.value.retry_after_ms == 12_000
    assert ei.value.__cause__ is err


def test_rate_limit_default_cooldown():
    err = _status_error(openai.RateLimitError, 429)
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_provider(FakeCompletions(error=err)).get_logprobs(_request()))
    assert ei.value.retry_after_ms == 60_000


@pytest.mark.parametrize(
    "cls, status, kind, retryable",
    [
        (openai.AuthenticationError, 401, ErrorKind.API_KEY_MISSING, False),
        (openai.PermissionDeniedError, 403, ErrorKind.API_KEY_MISSING, False),
        (openai.NotFoundError, 404, ErrorKind.MODEL_NOT_FOUND, False),
        (openai.BadRequestError, 400, ErrorKind.UNKNOWN, False),
        (openai.InternalServerError, 500, ErrorKind.UNKNOWN, True),
        (openai.APIStatusError, 503, ErrorKind.UNKNOWN, True),
    ],
)
def test_status_error_mapping(cls, status, kind, retryable):
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_provider(FakeCompletions(error=_status_error(cls, status))).get_logprobs(_request()))
    assert ei.value.kind is kind
    assert ei.value.retryable is retryable


@pytest.mark.parametrize(
    "error",
    [
        openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com")),
        openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com")),
    ],
)
def test_transport_errors_are_network_errors(error):
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_provider(FakeCompletions(error=error)).get_logprobs(_request()))
    assert ei.value.kind is ErrorKind.NETWORK_ERROR
    assert ei.value.retryable is True


def test_unexpected_exception_is_wrapped():
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_provider(FakeCompletions(error=RuntimeError("boom"))).get_logprobs(_request()))
    assert ei.value.kind is ErrorKind.UNKNOWN


# ---- Cancellation ----

def test_cancellation_is_not_a_provider_error():
    completions = FakeCompletions(make_chat_response("x", [("x", -0.1)]), delay=10)

    async def main():
        token = CancellationToken()
        provider = _provider(completions)

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel()

        asyncio.ensure_future(cancel_soon())
        await provider.get_logprobs(_request(cancel_token=token))

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(main())
    assert len(completions.calls) == 1


def test_pre_cancelled_request_never_calls_backend():
    completions = FakeCompletions(make_chat_response("x", [("x", -0.1)]))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(_provider(completions).get_logprobs(_request(cancel_token=token)))
    assert completions.calls == []


@pytest.mark.integration
@pytest.mark.skipif(
    os.getenv("RUN_PROVIDER_INTEGRATION") != "1" or not os.getenv("OPENAI_API_KEY"),
    reason="Requires OPENAI_API_KEY and RUN_PROVIDER_INTEGRATION=1",
)
def test_openai_integration_returns_distribution():
    provider = OpenAIProvider(api_key=os.environ["OPENAI_API_KEY"])
    res = asyncio.run(provider.get_logprobs(_request()))

    print("\n--- OpenAI distribution ---")
    for t in res.tokens:
        print(repr(t.token), t.probability)

    assert res.tokens
    assert isinstance(res.selected_token, str)
