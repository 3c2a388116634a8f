"""Request pacing and cooperative cancellation for reconciliation runs."""

from __future__ import annotations

import asyncio
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable


Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class RunCancelledError(Exception):
    """Raised by :meth:`RequestThrottle.slot` when a run is cancelled while waiting."""


class CancellationToken:
    """Flag set from outside a run and polled by the run between calls."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()


class RequestThrottle:
    """Spaces out TMDB calls using two intervals.

    TMDB weighs search and find requests more heavily than detail lookups, so
    a search is followed by ``search_interval`` of quiet time and any other
    call by ``detail_interval``. The wait itself is not interruptible, so a
    token handed to :meth:`slot` is checked once the wait is over.
    """

    def __init__(
        self,
        search_interval: float,
        detail_interval: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        if search_interval < 0 or detail_interval < 0:
            raise ValueError("Throttle intervals must not be negative")
        self._search_interval = search_interval
        self._detail_interval = detail_interval
        self._clock = clock
        self._sleep = sleep
        self._ready_at: float | None = None

    @property
    def search_interval(self) -> float:
        return self._search_interval

    @property
    def detail_interval(self) -> float:
        return self._detail_interval

    async def wait(self) -> None:
        """Block until the next call is allowed."""

        if self._ready_at is None:
            return
        remaining = self._ready_at - self._clock()
        if remaining > 0:
            await self._sleep(remaining)

    def record(self, *, search: bool) -> None:
        """Note that a call just finished and schedule the next slot."""

        interval = self._search_interval if search else self._detail_interval
        self._ready_at = self._clock() + interval

    @asynccontextmanager
    async def slot(
        self, *, search: bool = False, token: CancellationToken | None = None
    ) -> AsyncIterator[None]:
        """Wait for a free slot, run the wrapped call, then book the next slot.

        Raises :class:`RunCancelledError` without booking a slot when ``token``
        was cancelled during the wait.
        """

        await self.wait()
        if token is not None and token.cancelled:
            raise RunCancelledError("Run cancelled while waiting for a request slot")
        try:
            yield
        finally:
            self.record(search=search)
