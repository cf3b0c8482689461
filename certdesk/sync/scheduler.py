from __future__ import annotations

import asyncio
from typing import Callable


class SchedulerHandle:
    """Single repeating timer on the running event loop.

    ``arm`` and ``disarm`` are idempotent: at most one timer is pending no
    matter how often either is called. ``callback`` runs on each tick and the
    timer re-arms itself afterwards unless the callback disarmed it.
    """

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._callback = callback
        self._active = False
        self._handle: asyncio.TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        self._active = True
        if self._handle is None:
            self._handle = asyncio.get_running_loop().call_later(self.interval, self._fire)

    def disarm(self) -> None:
        self._active = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        try:
            self._callback()
        finally:
            if self._active and self._handle is None:
                self._handle = asyncio.get_running_loop().call_later(self.interval, self._fire)
