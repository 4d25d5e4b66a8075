from __future__ import annotations

import math
from typing import Iterable, List, TYPE_CHECKING

if TYPE_CHECKING:
    from .types import TokenProbability

_COLD_RGB = (59, 130, 246)
_HOT_RGB = (239, 68, 68)


def logprob_to_prob(logprob: float) -> float:
    """logprob is ln(p), so p = e^logprob."""
    return float(math.exp(float(logprob)))


def prob_to_logprob(probability: float) -> float:
    p = float(probability)
    if not 0.0 < p <= 1.0:
        raise ValueError(f"probability must be within (0, 1], got {probability!r}")
    return math.log(p)


def sort_by_probability(tokens: Iterable["TokenProbability"]) -> List["TokenProbability"]:
    """Return a new list sorted by probability, highest first (stable for ties)."""
    return sorted(tokens, key=lambda t: t.probability, reverse=True)


def format_probability(probability: float) -> str:
    return f"{probability * 100:.1f}%"


def temperature_color(temperature: float) -> str:
    """Interpolate between blue (cold) and red (hot)."""
    t = min(max(float(temperature), 0.0), 1.0)
    r, g, b = (
        int(math.floor(cold + (hot - cold) * t + 0.5))
        for cold, hot in zip(_COLD_RGB, _HOT_RGB)
    )
    return f"rgb({r}, {g}, {b})"
