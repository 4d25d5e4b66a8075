# examples/probe.py
from __future__ import annotations

import asyncio
import logging
import sys

from temperature_decider.config import load_providers_config
from temperature_decider.providers import build_registry, format_probability, temperature_color
from temperature_decider.session import ProbeSession, default_selection


async def main(prompt: str) -> None:
    cfg = load_providers_config("configs/providers.yaml")
    registry = build_registry(cfg)
    session = ProbeSession(registry, default_top_k=cfg.defaults.top_k)

    print("\n=== Temperature Decider ===")
    print("Prompt:", prompt)

    print("\n[Step 1] Provider status")
    statuses = await session.provider_status()
    for s in statuses:
        models = ", ".join(m.id for m in s.provider.models) or "-"
        state = "available" if s.available else f"unavailable{': ' + s.error if s.error else ''}"
        print(f"  {s.provider.name:<16} {state:<14} models: {models}")

    selection = default_selection(statuses)
    if selection is None:
        print("\nNo provider is available. Set OPENAI_API_KEY / GOOGLE_AI_API_KEY or start Ollama.")
        return
    provider_id, model_id = selection

    temperature = cfg.defaults.temperature
    print(f"\n[Step 2] Next-token distribution from {provider_id}/{model_id}")
    print("Temperature:", temperature, temperature_color(temperature))

    result = await session.submit(prompt, provider_id, model_id, temperature)

    if result.status == "error" and result.error_view is not None:
        err = result.error_view
        print(f"\n{'Rate Limited' if err.is_rate_limited else 'Error'} ({err.kind.value}): {err.message}")
        if err.offer_retry:
            hint = f" in {err.cooldown_ms / 1000:.0f}s" if err.cooldown_ms else ""
            print(f"Retry{hint}.")
        return

    response = result.response
    assert response is not None
    print(f"Selected token: {response.selected_token!r}  ({response.latency_ms} ms)")
    if response.degraded:
        print("(provider returned no distribution for this model)")
    for tok in response.tokens:
        bar = "#" * int(round(tok.probability * 40))
        print(f"  {tok.token!r:<16} {format_probability(tok.probability):>7}  {bar}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main(" ".join(sys.argv[1:]) or "The quick brown fox"))
