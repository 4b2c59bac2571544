"""Ordered outbound channel carrying one session's patch stream.

A log source produces into the channel from a background task; the
delivery layer (SSE handler, CLI) consumes it with ``async for``. Closing
the channel from the consumer side cancels the producer.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

JSON_PATCH = "json_patch"
FINISHED = "finished"
ERROR = "error"

_TERMINAL_EVENTS = frozenset({FINISHED, ERROR})


@dataclass
class LogEvent:
    """One event in a session log stream."""
    event: str
    data: Any

    @property
    def is_terminal(self) -> bool:
        return self.event in _TERMINAL_EVENTS

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


class PatchChannel:
    """Async queue of ``LogEvent`` for a single session stream."""

    def __init__(self, session_id: str, maxsize: int = 5000) -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[LogEvent] = asyncio.Queue(maxsize=maxsize)
        self._producer: asyncio.Task | None = None
        self._ended = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def ended(self) -> bool:
        """True once a terminal event has been queued."""
        return self._ended

    def attach(self, producer: asyncio.Task) -> None:
        """Bind the task feeding this channel so ``aclose`` can cancel it."""
        self._producer = producer

    async def _put(self, event: LogEvent) -> None:
        if self._closed or self._ended:
            logger.debug(
                "Channel %s closed, dropping %s event", self.session_id, event.event,
            )
            return
        if event.is_terminal:
            self._ended = True
        await self._queue.put(event)

    async def send_patch(self, patch: list[dict[str, Any]]) -> None:
        """Append one patch (a list of operations) to the stream."""
        await self._put(LogEvent(JSON_PATCH, patch))

    async def finish(self, message: str = "Log stream ended") -> None:
        await self._put(LogEvent(FINISHED, {"message": message}))

    async def fail(self, error: str) -> None:
        await self._put(LogEvent(ERROR, {"error": error}))

    async def __aiter__(self) -> AsyncIterator[LogEvent]:
        while not self._closed:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                break

    async def get(self, timeout: float | None = None) -> LogEvent | None:
        """Next event, or None if *timeout* elapses first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def collect(self) -> list[LogEvent]:
        """Consume the whole stream (completed sessions, tests)."""
        return [event async for event in self]

    async def aclose(self) -> None:
        """Consumer went away: stop the producer and drop pending events."""
        if self._closed:
            return
        self._closed = True
        producer = self._producer
        if producer is not None and not producer.done():
            producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer
        while not self._queue.empty():
            self._queue.get_nowait()
        logger.info("Log stream for %s closed by consumer", self.session_id)
