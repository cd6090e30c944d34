from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Callable, Protocol

ClockListener = Callable[[datetime], None]


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """UTC wall clock. Deadlines are only observed when a session polls it."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class VirtualClock:
    """Manually advanced clock that notifies subscribers on every change.

    Subscribed sessions use the notification to fire their own deadlines, which
    is how the verification timer preempts an outstanding check under test.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start if start is not None else datetime(2026, 1, 1, tzinfo=UTC)
        if self._now.tzinfo is None:
            raise ValueError("VirtualClock requires a timezone-aware start time")
        self._listeners: list[ClockListener] = []

    def now(self) -> datetime:
        return self._now

    def subscribe(self, listener: ClockListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ClockListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def advance(self, delta: timedelta) -> datetime:
        if delta < timedelta(0):
            raise ValueError("VirtualClock cannot move backwards")
        return self.set(self._now + delta)

    def set(self, moment: datetime) -> datetime:
        if moment < self._now:
            raise ValueError("VirtualClock cannot move backwards")
        self._now = moment
        # Listeners may unsubscribe while being notified.
        for listener in list(self._listeners):
            listener(self._now)
        return self._now
