"""Cooperative cancellation for conversation turns."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from parley.errors import TurnCancelledError

T = TypeVar("T")


class CancellationToken:
    """Signal shared between a turn and whoever may abort it."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Process was cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise TurnCancelledError when the token has been cancelled."""
        if self._event.is_set():
            raise TurnCancelledError(self.reason or "Process was cancelled")

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """Await ``awaitable`` unless ``token`` is cancelled first.

    Raises:
        TurnCancelledError: If the token fires before the awaitable completes
    """
    token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()

    if work in done:
        return work.result()

    work.cancel()
    raise TurnCancelledError(token.reason or "Process was cancelled")
