"""Progress event sinks.

Producers (the batch executor) only know `await sink.emit(event)`. The HTTP
layer drains a `QueueEventSink` into a text/event-stream response.
"""

from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, Protocol


class EventSink(Protocol):
    async def emit(self, event: dict) -> None: ...


class ListEventSink:
    """Collects events in memory."""

    def __init__(self) -> None:
        self.events: list[dict] = []

    async def emit(self, event: dict) -> None:
        self.events.append(dict(event))

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e.get("type") == event_type]


class QueueEventSink:
    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def emit(self, event: dict) -> None:
        if self._closed:
            return
        await self._queue.put(dict(event))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    async def __aiter__(self) -> AsyncIterator[dict]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


def format_sse(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"
