"""
Core business logic for calculating free intervals and bookable start times.

This is the heart of the engine - pure domain logic without any
external dependencies (no database, no clock, no I/O).
"""

from datetime import date
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import (
    AvailabilityException,
    Book,
    ExceptionKind,
    ManualBlock,
    MinuteRange,
    Reservation,
)


class AvailabilityCalculator:
    """
    Derives a day's free intervals and the start times bookable inside them.

    Algorithm:
    1. Resolve the base interval (exception shadows the weekly template)
    2. Collect manual blocks and active reservations as busy ranges
    3. Sweep over the busy ranges sorted by start to cut out free gaps
    4. Lay the granularity grid over each free interval to enumerate starts
    """

    def __init__(self, granularity_minutes: int = 30):
        if granularity_minutes <= 0:
            raise ValueError("granularity_minutes must be greater than zero")
        self.granularity_minutes = granularity_minutes

    def day_base_interval(
        self,
        book: Book,
        day: date,
        exception: Optional[AvailabilityException] = None
    ) -> MinuteRange | None:
        """
        Resolve the working hours of ``book`` on ``day``.

        An exception fully replaces the weekly template for its date: an
        UNAVAILABLE exception closes the day, CUSTOM_HOURS substitutes its
        own range. The two are never merged.
        """
        if not book.is_open_on(day):
            return None

        if exception is not None:
            if exception.kind is ExceptionKind.UNAVAILABLE:
                return None
            return exception.custom_hours

        return book.template.hours_for_day(day)

    def free_intervals(
        self,
        base: MinuteRange | None,
        blocks: Iterable[ManualBlock] = (),
        reservations: Iterable[Reservation] = (),
        not_before: Optional[int] = None
    ) -> List[MinuteRange]:
        """
        Subtract blocks and active reservations from the base interval.

        Cancelled and completed reservations do not take time. ``not_before``
        cuts away everything earlier than that minute (used for today).

        Returns disjoint ranges sorted by start.
        """
        if base is None:
            return []

        busy = [block.time_range for block in blocks]
        busy.extend(
            reservation.time_range
            for reservation in reservations
            if reservation.is_active
        )

        if not_before is not None and not_before > base.start:
            if not_before >= base.end:
                return []
            base = MinuteRange(start=not_before, end=base.end)

        return self._subtract_busy_from_block(base, busy)

    def bookable_starts(
        self,
        free: Sequence[MinuteRange],
        duration_minutes: int,
        granularity_minutes: Optional[int] = None
    ) -> List[int]:
        """
        Enumerate start minutes ``f0 + k * granularity`` per free interval
        such that the whole duration still fits into that interval.

        Intervals never concatenate: a duration longer than every single
        free interval yields nothing.
        """
        step = self._resolve_step(duration_minutes, granularity_minutes)
        starts: List[int] = []

        for interval in free:
            candidate = interval.start
            while candidate + duration_minutes <= interval.end:
                starts.append(candidate)
                candidate += step

        return starts

    def has_bookable_start(
        self,
        free: Sequence[MinuteRange],
        duration_minutes: int,
        granularity_minutes: Optional[int] = None
    ) -> bool:
        """
        Check whether at least one start exists, without enumerating them.

        The first grid point of an interval is its own start, so an
        interval either fits the duration at its start or not at all.
        """
        self._resolve_step(duration_minutes, granularity_minutes)
        return any(
            interval.duration_minutes() >= duration_minutes
            for interval in free
        )

    def earliest_slot(
        self,
        free: Sequence[MinuteRange],
        duration_minutes: int,
        granularity_minutes: Optional[int] = None
    ) -> MinuteRange | None:
        """First bookable range of ``duration_minutes``, or None."""
        self._resolve_step(duration_minutes, granularity_minutes)
        for interval in free:
            if interval.duration_minutes() >= duration_minutes:
                return MinuteRange(start=interval.start, end=interval.start + duration_minutes)
        return None

    def is_bookable(
        self,
        free: Sequence[MinuteRange],
        requested: MinuteRange,
        granularity_minutes: Optional[int] = None
    ) -> bool:
        """
        Check that ``requested`` lies within one free interval.

        With ``granularity_minutes`` the start must also sit on that
        interval's grid, i.e. be one of the values ``bookable_starts`` emits.
        """
        for interval in free:
            if not interval.contains(requested):
                continue
            if granularity_minutes is None:
                return True
            return (requested.start - interval.start) % granularity_minutes == 0
        return False

    @staticmethod
    def find_overlap(
        reservations: Iterable[Reservation]
    ) -> Tuple[Reservation, Reservation] | None:
        """
        Return the first pair of active reservations that overlap, if any.
        """
        active = sorted(
            (r for r in reservations if r.is_active),
            key=lambda r: r.time_range.start
        )
        for previous, current in zip(active, active[1:]):
            if current.time_range.start < previous.time_range.end:
                return previous, current
        return None

    def _resolve_step(self, duration_minutes: int, granularity_minutes: Optional[int]) -> int:
        if duration_minutes <= 0:
            raise ValueError(f"Duration must be greater than zero, got {duration_minutes}")
        step = granularity_minutes if granularity_minutes is not None else self.granularity_minutes
        if step <= 0:
            raise ValueError(f"Granularity must be greater than zero, got {step}")
        return step

    def _subtract_busy_from_block(
        self,
        working_block: MinuteRange,
        busy_ranges: List[MinuteRange]
    ) -> List[MinuteRange]:
        """
        Subtract busy ranges from a working block, yielding free ranges.

        Example:
        Working: 09:00 - 17:00
        Busy: [10:00-11:00, 15:00-15:30]
        Result: [09:00-10:00, 11:00-15:00, 15:30-17:00]
        """
        free_ranges: List[MinuteRange] = []
        current_start = working_block.start

        for busy in sorted(busy_ranges):
            if busy.end <= current_start:
                continue
            if busy.start >= working_block.end:
                break

            # Free time before this busy period
            if current_start < busy.start:
                free_ranges.append(MinuteRange(start=current_start, end=busy.start))

            current_start = max(current_start, busy.end)
            if current_start >= working_block.end:
                return free_ranges

        if current_start < working_block.end:
            free_ranges.append(MinuteRange(start=current_start, end=working_block.end))

        return free_ranges
