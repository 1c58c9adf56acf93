"""
Clock implementations injected into the availability services.
"""

from __future__ import annotations

from typing import Protocol

import pendulum
from pendulum import DateTime


class Clock(Protocol):
    """Source of the current wall-clock time."""

    def now(self) -> DateTime:
        """Return the current time in the engine's time zone."""


class SystemClock:
    """Reads the real time in a single configured time zone."""

    def __init__(self, timezone: str = "Europe/Berlin"):
        self.timezone = timezone

    def now(self) -> DateTime:
        return pendulum.now(self.timezone)


class FixedClock:
    """
    Clock pinned to one instant, for tests and replays.
    """

    def __init__(self, instant: DateTime):
        self.instant = instant

    @classmethod
    def at(cls, value: str, timezone: str = "Europe/Berlin") -> "FixedClock":
        """Pin the clock to an ISO 8601 string such as ``2024-11-25 08:00``."""
        return cls(pendulum.parse(value, tz=timezone))

    def now(self) -> DateTime:
        return self.instant

    def advance(self, **kwargs) -> None:
        """Move the pinned instant, e.g. ``advance(days=1)``."""
        self.instant = self.instant.add(**kwargs)
