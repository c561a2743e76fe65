"""Timer that force-resolves turns which stop making progress."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class StuckTurnWatchdog:
    """Single-shot timer re-armed on every progress signal of the open turn.

    ``on_expire`` runs on the event loop when ``timeout`` elapses with no
    call to :meth:`arm` or :meth:`disarm`. Arming outside a running loop is
    a no-op so synchronous callers (and tests) can drive the assembler
    without one.
    """

    def __init__(
        self,
        on_expire: Callable[[], None],
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("watchdog timeout must be positive")
        self._on_expire = on_expire
        self._timeout = float(timeout)
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        """Start or restart the countdown."""

        self.disarm()
        loop = self._resolve_loop()
        if loop is None:
            return
        self._handle = loop.call_later(self._timeout, self._fire)

    def disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def expire(self) -> None:
        """Trigger expiry immediately, as if the timeout had elapsed."""

        self.disarm()
        self._fire()

    def _fire(self) -> None:
        self._handle = None
        LOGGER.warning("No progress for %.0fs; discarding stuck turn", self._timeout)
        self._on_expire()

    def _resolve_loop(self) -> asyncio.AbstractEventLoop | None:
        if self._loop is not None:
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running event loop; watchdog not scheduled")
            return None


__all__ = ["DEFAULT_TIMEOUT_SECONDS", "StuckTurnWatchdog"]
