from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation signal shared between a caller and one request.

    The token only takes effect at the network call, wrapped with
    run_cancellable(). Cancelling before the call starts prevents it.
    """

    def __init__(self) -> None:
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        # Event is created lazily so the token can be built outside a running loop.
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()


def _discard(awaitable: Awaitable[object]) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """
    Await `awaitable`, aborting it as soon as `token` is cancelled.

    Cancellation surfaces as asyncio.CancelledError, never as a ProviderError.
    """
    if token is None:
        return await awaitable

    if token.cancelled:
        _discard(awaitable)
        raise asyncio.CancelledError("request cancelled before it was sent")

    call = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({call, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # Outer cancellation lands here too; tear both down before leaving.
        if not call.done():
            call.cancel()
        watcher.cancel()

    if not call.done() or call.cancelled():
        await asyncio.gather(call, return_exceptions=True)
        raise asyncio.CancelledError("request cancelled")

    return call.result()
