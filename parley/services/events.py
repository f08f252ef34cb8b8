"""Turn event channel: ordered synchronous subscribers plus async iteration."""

import asyncio
from collections.abc import AsyncIterator, Callable

from parley.models.llm import TurnEvent
from parley.utils.logging import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[TurnEvent], None]

_CLOSED = object()


class TurnEventChannel:
    """Carries displayable events out of a running turn.

    Subscribers run synchronously, in subscription order, inside ``emit``.
    Iterating the channel yields every event emitted until ``close``.
    """

    def __init__(self, *subscribers: Subscriber) -> None:
        self._subscribers: list[Subscriber] = list(subscribers)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.history: list[TurnEvent] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def emit(self, event: TurnEvent) -> None:
        if self._closed:
            logger.debug(f"Dropping {event.kind} event emitted after close")
            return
        self.history.append(event)
        for subscriber in self._subscribers:
            subscriber(event)
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[TurnEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


def callback_channel(
    on_assistant_message: Subscriber | None = None, on_tool_result: Subscriber | None = None
) -> TurnEventChannel:
    """Adapt the per-kind callback style onto a channel."""
    channel = TurnEventChannel()
    if on_assistant_message:
        channel.subscribe(lambda event: on_assistant_message(event) if event.kind == "assistant_message" else None)
    if on_tool_result:
        channel.subscribe(lambda event: on_tool_result(event) if event.kind == "tool_result" else None)
    return channel
