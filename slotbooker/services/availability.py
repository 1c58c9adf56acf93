"""
Read-side application service: free intervals, bookable starts and the
month calendar for one book.

Every call reads the store afresh. Nothing is cached across calls, since
templates, exceptions, blocks and reservations can change in between.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional

import pendulum

from ..adapters.clock import Clock
from ..domain.exceptions import NotFoundError
from ..domain.interval_calculus import AvailabilityCalculator
from ..domain.models import (
    ACTIVE_STATUSES,
    SCHEDULED_STATUSES,
    Book,
    ManualBlock,
    MinuteRange,
    MonthOverview,
    Reservation,
)
from .store import ScheduleReader

logger = logging.getLogger(__name__)


class AvailabilityService:
    """
    Orchestrates store reads and delegates the interval math to the
    domain-level ``AvailabilityCalculator``.
    """

    def __init__(
        self,
        store: ScheduleReader,
        calculator: AvailabilityCalculator,
        clock: Clock,
    ) -> None:
        self._store = store
        self._calculator = calculator
        self._clock = clock

    @property
    def calculator(self) -> AvailabilityCalculator:
        return self._calculator

    def get_day_availability(
        self,
        book_id: str,
        day: date,
        duration_minutes: Optional[int] = None,
    ) -> List[MinuteRange]:
        """
        Free intervals of ``book_id`` on ``day``.

        With ``duration_minutes`` only intervals long enough to host such a
        reservation are returned.
        """
        free = self.compute_free_intervals(self._store, self._require_book(book_id), day)
        if duration_minutes is None:
            return free
        if duration_minutes <= 0:
            raise ValueError(f"Duration must be greater than zero, got {duration_minutes}")
        return [interval for interval in free if interval.duration_minutes() >= duration_minutes]

    def get_bookable_starts(
        self,
        book_id: str,
        day: date,
        duration_minutes: int,
        granularity_minutes: Optional[int] = None,
    ) -> List[int]:
        """Start minutes a reservation of ``duration_minutes`` could take."""
        free = self.compute_free_intervals(self._store, self._require_book(book_id), day)
        return self._calculator.bookable_starts(free, duration_minutes, granularity_minutes)

    def get_earliest_slot(
        self,
        book_id: str,
        day: date,
        duration_minutes: int,
        granularity_minutes: Optional[int] = None,
    ) -> MinuteRange | None:
        free = self.compute_free_intervals(self._store, self._require_book(book_id), day)
        return self._calculator.earliest_slot(free, duration_minutes, granularity_minutes)

    def get_month_availability(
        self,
        book_id: str,
        year: int,
        month: int,
        duration_minutes: int,
        granularity_minutes: Optional[int] = None,
    ) -> Dict[date, bool]:
        """
        Map every date of the month to whether any start is bookable.

        Exceptions, blocks and reservations for the whole month are read in
        one pass per kind; each day stops at the first fitting interval.
        """
        book = self._require_book(book_id)
        first = pendulum.date(year, month, 1)
        last = first.end_of("month")

        exceptions = {
            exception.date: exception
            for exception in self._store.list_exceptions(book_id, first, last)
        }
        blocks_by_day: Dict[date, List[ManualBlock]] = defaultdict(list)
        for block in self._store.list_blocks(book_id, first, last):
            blocks_by_day[block.date].append(block)
        reservations_by_day: Dict[date, List[Reservation]] = defaultdict(list)
        for reservation in self._store.list_reservations(
            book_id, first, last, statuses=tuple(ACTIVE_STATUSES)
        ):
            reservations_by_day[reservation.date].append(reservation)

        availability: Dict[date, bool] = {}
        current = first
        while current <= last:
            base = self._calculator.day_base_interval(book, current, exceptions.get(current))
            if base is None:
                availability[current] = False
            else:
                free = self._calculator.free_intervals(
                    base,
                    blocks_by_day.get(current, ()),
                    reservations_by_day.get(current, ()),
                    not_before=self._not_before(current),
                )
                availability[current] = self._calculator.has_bookable_start(
                    free, duration_minutes, granularity_minutes
                )
            current = current.add(days=1)

        logger.debug(
            "Month %04d-%02d for %s: %d of %d days open",
            year, month, book_id, sum(availability.values()), len(availability)
        )
        return availability

    def get_month_overview(self, book_id: str, year: int, month: int) -> MonthOverview:
        """Exceptions, blocks and non-cancelled reservations of a month."""
        self._require_book(book_id)
        first = pendulum.date(year, month, 1)
        last = first.end_of("month")

        return MonthOverview(
            book_id=book_id,
            year=year,
            month=month,
            exceptions=self._store.list_exceptions(book_id, first, last),
            blocks=self._store.list_blocks(book_id, first, last),
            reservations=self._store.list_reservations(
                book_id, first, last, statuses=tuple(SCHEDULED_STATUSES)
            ),
        )

    def compute_free_intervals(
        self,
        reader: ScheduleReader,
        book: Book,
        day: date,
        reservations: Optional[List[Reservation]] = None,
    ) -> List[MinuteRange]:
        """
        Free intervals of ``book`` on ``day`` read through ``reader``.

        The admission path passes its transaction as ``reader`` together
        with the reservations it already loaded.
        """
        base = self.base_interval(reader, book, day)
        if base is None:
            return []

        if reservations is None:
            reservations = reader.list_reservations(book.id, day, statuses=tuple(ACTIVE_STATUSES))

        return self._calculator.free_intervals(
            base,
            reader.list_blocks(book.id, day),
            reservations,
            not_before=self._not_before(day),
        )

    def base_interval(self, reader: ScheduleReader, book: Book, day: date) -> MinuteRange | None:
        return self._calculator.day_base_interval(book, day, reader.get_exception(book.id, day))

    def _not_before(self, day: date) -> Optional[int]:
        """
        Earliest minute still open on ``day`` according to the clock.

        Past days are closed entirely (1440). For today the current minute
        is rounded up to the calculator's granularity.
        """
        now = self._clock.now()
        today = now.date()
        if day > today:
            return None
        if day < today:
            return 1440

        minute = now.hour * 60 + now.minute + (1 if now.second or now.microsecond else 0)
        step = self._calculator.granularity_minutes
        return min(1440, -(-minute // step) * step)

    def _require_book(self, book_id: str) -> Book:
        book = self._store.get_book(book_id)
        if book is None:
            raise NotFoundError(f"Book not found: {book_id}")
        return book
