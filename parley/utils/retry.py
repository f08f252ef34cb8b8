"""Retry timing helpers for transport retries and correction attempts."""

import asyncio
import random

from parley.errors import TurnCancelledError
from parley.utils.cancellation import CancellationToken

DEFAULT_CORRECTION_DELAYS: tuple[float, ...] = (1.0, 2.0)


def get_retry_delay(index: int, delays: tuple[float, ...] = DEFAULT_CORRECTION_DELAYS) -> float:
    """Return the delay for the zero-based retry ``index``, clamped to the last entry."""
    if not delays or index < 0:
        return 0.0
    return delays[min(index, len(delays) - 1)]


def calculate_backoff(attempt: int, base_delay: float, max_delay: float, jitter: bool = True) -> float:
    """Exponential backoff for a zero-based attempt, with up to 25% random jitter."""
    delay = min(base_delay * (2**attempt), max_delay)
    if jitter and delay > 0:
        delay += random.uniform(0, delay * 0.25)
    return min(delay, max_delay)


async def delay_with_signal(seconds: float, token: CancellationToken | None = None) -> None:
    """Sleep for ``seconds`` and wake early with TurnCancelledError if ``token`` fires."""
    if seconds <= 0:
        if token:
            token.raise_if_cancelled()
        return

    if token is None:
        await asyncio.sleep(seconds)
        return

    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise TurnCancelledError(token.reason or "Process was cancelled")


def build_retry_label(attempt: int, max_attempts: int) -> str:
    return f"Retrying response ({attempt}/{max_attempts})"
