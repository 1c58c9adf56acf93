"""
Persistence contract the services depend on.

Stores hand out and accept domain objects only. Every adapter must offer a
``transaction()`` unit of work whose reads and writes commit together; the
admission path runs its read-check-write span inside one.
"""

from __future__ import annotations

from datetime import date
from typing import ContextManager, List, Optional, Protocol, Sequence

from ..domain.models import (
    AvailabilityException,
    Book,
    ManualBlock,
    Reservation,
    ReservationStatus,
)


class ScheduleReader(Protocol):
    """Read side of the store."""

    def get_book(self, book_id: str) -> Optional[Book]:
        """Return the book or None when unknown."""

    def list_books(self) -> List[Book]:
        """Return all books ordered by id."""

    def get_exception(self, book_id: str, day: date) -> Optional[AvailabilityException]:
        """Return the exception for (book, day), at most one exists."""

    def list_exceptions(self, book_id: str, start: date, end: date) -> List[AvailabilityException]:
        """Return exceptions with ``start <= date <= end``."""

    def list_blocks(self, book_id: str, start: date, end: Optional[date] = None) -> List[ManualBlock]:
        """Return manual blocks on ``start`` (or within ``start..end``)."""

    def list_reservations(
        self,
        book_id: str,
        start: date,
        end: Optional[date] = None,
        statuses: Optional[Sequence[ReservationStatus]] = None,
    ) -> List[Reservation]:
        """Return reservations on ``start`` (or within ``start..end``)."""

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        """Return the reservation or None when unknown."""


class SchedulingStore(ScheduleReader, Protocol):
    """Full store contract: reads, writes and a transactional unit of work."""

    def save_book(self, book: Book) -> Book:
        """Insert or replace a book."""

    def add_exception(self, exception: AvailabilityException) -> AvailabilityException:
        """Persist an exception; raise ConflictError if (book, date) has one."""

    def remove_exception(self, exception_id: int) -> None:
        """Delete an exception; raise NotFoundError if unknown."""

    def add_block(self, block: ManualBlock) -> ManualBlock:
        """Persist a manual block and return it with its id."""

    def remove_block(self, block_id: int) -> None:
        """Delete a manual block; raise NotFoundError if unknown."""

    def add_reservation(self, reservation: Reservation) -> Reservation:
        """
        Persist a reservation. Raise OverlapConstraintError if it is active
        and overlaps another active reservation of the same book and date.
        """

    def update_reservation_status(self, reservation_id: str, status: ReservationStatus) -> Reservation:
        """Set a reservation's status; raise NotFoundError if unknown."""

    def lock_book(self, book_id: str) -> None:
        """
        Claim the book for the rest of the current transaction so that
        concurrent admissions serialize at the storage boundary.
        """

    def transaction(self) -> ContextManager["SchedulingStore"]:
        """Open a unit of work; commits on clean exit, rolls back on error."""
