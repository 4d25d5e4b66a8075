from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional

DEFAULT_RETRY_AFTER_MS = 60_000


class ErrorKind(str, Enum):
    API_KEY_MISSING = "API_KEY_MISSING"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    UNKNOWN = "UNKNOWN"


class ProviderError(Exception):
    """
    Categorized provider failure.

    Built at the point of failure inside an adapter and passed up unchanged;
    attributes cannot be reassigned after construction.
    """

    _FIELDS = ("message", "kind", "provider", "retryable", "retry_after_ms")

    def __init__(
        self,
        *,
        message: str,
        kind: ErrorKind,
        provider: str,
        retryable: bool,
        retry_after_ms: Optional[int] = None,
    ) -> None:
        object.__setattr__(self, "message", message)
        object.__setattr__(self, "kind", ErrorKind(kind))
        object.__setattr__(self, "provider", provider)
        object.__setattr__(self, "retryable", bool(retryable))
        object.__setattr__(self, "retry_after_ms", retry_after_ms)
        super().__init__(message)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._FIELDS:
            raise AttributeError(f"ProviderError is immutable; cannot set {name!r}")
        object.__setattr__(self, name, value)

    def __reduce__(self):
        # copy and pickle rebuild through the keyword-only constructor.
        return (
            _rebuild_provider_error,
            (self.message, self.kind.value, self.provider, self.retryable, self.retry_after_ms),
        )

    def __str__(self) -> str:
        return (
            f"ProviderError(provider={self.provider!r}, kind={self.kind.value!r}, "
            f"retryable={self.retryable}): {self.message}"
        )


def _rebuild_provider_error(
    message: str,
    kind: str,
    provider: str,
    retryable: bool,
    retry_after_ms: Optional[int],
) -> ProviderError:
    return ProviderError(
        message=message,
        kind=ErrorKind(kind),
        provider=provider,
        retryable=retryable,
        retry_after_ms=retry_after_ms,
    )


class ProviderNotFoundError(KeyError):
    """Raised by the registry for an unknown provider id (a caller bug, not a provider failure)."""

    def __init__(self, provider_id: str, available: list[str] | None = None) -> None:
        self.provider_id = provider_id
        self.available = list(available or [])
        super().__init__(provider_id)

    def __str__(self) -> str:
        known = ", ".join(self.available) or "none"
        return f"Provider '{self.provider_id}' not found. Available: {known}"


def parse_retry_after_ms(
    headers: Optional[Mapping[str, str]],
    default: int = DEFAULT_RETRY_AFTER_MS,
) -> int:
    """
    Read a retry hint from response headers.

    `retry-after-ms` is in milliseconds, `retry-after` in seconds. Anything
    absent or unparseable (including HTTP-date values) yields `default`.
    """
    if not headers:
        return default

    raw_ms = headers.get("retry-after-ms")
    if raw_ms is not None:
        try:
            ms = float(raw_ms)
            if ms >= 0:
                return int(round(ms))
        except (TypeError, ValueError):
            pass

    raw_s = headers.get("retry-after")
    if raw_s is not None:
        try:
            seconds = float(raw_s)
            if seconds >= 0:
                return int(round(seconds * 1000))
        except (TypeError, ValueError):
            pass

    return default
