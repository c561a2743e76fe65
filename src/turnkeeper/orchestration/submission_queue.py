"""FIFO backpressure for user submissions against one-turn-at-a-time backends."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque

from ..chat.message_model import Submission

LOGGER = logging.getLogger(__name__)

Dispatcher = Callable[[Submission], Awaitable[bool]]
"""Sends one submission; returns ``True`` while its turn is still streaming.

A dispatcher that resolves the turn inline (e.g. a one-shot HTTP fallback)
returns ``False`` so the queue moves on without waiting for a terminal event.
"""


class SubmissionQueue:
    """Serializes submissions so only one turn is in flight at a time.

    ``submit`` dispatches immediately when idle and otherwise appends to the
    pending queue. ``turn_complete`` is the only way the in-flight flag is
    cleared by the streaming path; it dispatches the oldest pending entry.
    """

    def __init__(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher
        self._pending: Deque[Submission] = deque()
        self._in_flight = False
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def pending(self) -> tuple[Submission, ...]:
        return tuple(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    async def submit(self, submission: Submission) -> bool:
        """Queue or dispatch ``submission``; returns ``True`` when it was dispatched now."""

        if self._in_flight:
            self._pending.append(submission)
            LOGGER.debug("Turn in flight; queued submission (%s pending)", len(self._pending))
            return False
        async with self._lock:
            if self._in_flight:
                self._pending.append(submission)
                return False
            await self._drain(submission)
        return True

    async def turn_complete(self) -> None:
        """Clear the in-flight flag and dispatch the next pending submission, if any."""

        async with self._lock:
            self._in_flight = False
            if self._pending:
                await self._drain(self._pending.popleft())

    def clear(self) -> None:
        """Drop pending submissions and mark the queue idle."""

        self._pending.clear()
        self._in_flight = False

    async def _drain(self, submission: Submission | None) -> None:
        while submission is not None:
            self._in_flight = True
            try:
                streaming = await self._dispatcher(submission)
            except Exception:
                self._in_flight = False
                raise
            if streaming:
                return
            self._in_flight = False
            submission = self._pending.popleft() if self._pending else None


__all__ = ["Dispatcher", "SubmissionQueue"]
