"""Best-effort progress notifications for one turn."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator

LOGGER = logging.getLogger(__name__)

_DEFAULT_CAPACITY = 32


@dataclass(frozen=True, slots=True)
class ToolStarted:
    """A tool is about to run."""

    name: str


class EventChannel:
    """Fire-and-forget channel between the agent loop and one front end.

    ``send`` never blocks and never raises: events are dropped when the
    channel is full or closed. Events carry no state of record.
    """

    def __init__(self, capacity: int = _DEFAULT_CAPACITY) -> None:
        self._queue: asyncio.Queue[ToolStarted | None] = asyncio.Queue(maxsize=capacity)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: ToolStarted) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            LOGGER.debug("Event channel full, dropping %r", event)
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Consumer is behind; it will see ``closed`` after draining.
            pass

    async def __aiter__(self) -> AsyncIterator[ToolStarted]:
        while True:
            if self._closed and self._queue.empty():
                return
            event = await self._queue.get()
            if event is None:
                return
            yield event
