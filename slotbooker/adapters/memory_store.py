"""
Thread-safe in-memory scheduling store.

Used by tests and when the engine is embedded without a database. Data can be
seeded from a JSON fixture file (see ``load_json``).
"""

from __future__ import annotations

import copy
import itertools
import json
import logging
import threading
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

import pendulum

from ..domain.exceptions import ConflictError, NotFoundError, OverlapConstraintError
from ..domain.models import (
    AvailabilityException,
    Book,
    ExceptionKind,
    ManualBlock,
    MinuteRange,
    Reservation,
    ReservationStatus,
    WeeklyTemplate,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """
    Keeps all records in dictionaries guarded by one re-entrant lock.

    Each public call is atomic. ``transaction()`` groups calls into a unit
    of work: reservations written inside a failed transaction are undone.
    Isolation between concurrent transactions on the same (book, date) is
    the admission lock's job; ``add_reservation`` still refuses overlapping
    active reservations as a backstop.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._books: Dict[str, Book] = {}
        self._exceptions: Dict[int, AvailabilityException] = {}
        self._blocks: Dict[int, ManualBlock] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._ids = itertools.count(1)
        self._local = threading.local()

    # Books

    def save_book(self, book: Book) -> Book:
        with self._lock:
            self._books[book.id] = copy.deepcopy(book)
            return copy.deepcopy(book)

    def get_book(self, book_id: str) -> Optional[Book]:
        with self._lock:
            book = self._books.get(book_id)
            return copy.deepcopy(book) if book else None

    def list_books(self) -> List[Book]:
        with self._lock:
            return [copy.deepcopy(self._books[key]) for key in sorted(self._books)]

    def lock_book(self, book_id: str) -> None:
        """Nothing to claim in memory; the admission lock serializes writers."""

    # Exceptions

    def get_exception(self, book_id: str, day: date) -> Optional[AvailabilityException]:
        with self._lock:
            for exception in self._exceptions.values():
                if exception.book_id == book_id and exception.date == day:
                    return copy.deepcopy(exception)
            return None

    def list_exceptions(self, book_id: str, start: date, end: date) -> List[AvailabilityException]:
        with self._lock:
            found = [
                copy.deepcopy(exception)
                for exception in self._exceptions.values()
                if exception.book_id == book_id and start <= exception.date <= end
            ]
        return sorted(found, key=lambda e: e.date)

    def add_exception(self, exception: AvailabilityException) -> AvailabilityException:
        with self._lock:
            if self.get_exception(exception.book_id, exception.date) is not None:
                raise ConflictError(
                    f"Book {exception.book_id} already has an exception on {exception.date.isoformat()}"
                )
            stored = copy.deepcopy(exception)
            stored.id = next(self._ids)
            self._exceptions[stored.id] = stored
            return copy.deepcopy(stored)

    def remove_exception(self, exception_id: int) -> None:
        with self._lock:
            if self._exceptions.pop(exception_id, None) is None:
                raise NotFoundError(f"Exception not found: {exception_id}")

    # Manual blocks

    def list_blocks(self, book_id: str, start: date, end: Optional[date] = None) -> List[ManualBlock]:
        end = end or start
        with self._lock:
            found = [
                copy.deepcopy(block)
                for block in self._blocks.values()
                if block.book_id == book_id and start <= block.date <= end
            ]
        return sorted(found, key=lambda b: (b.date, b.time_range))

    def add_block(self, block: ManualBlock) -> ManualBlock:
        with self._lock:
            stored = copy.deepcopy(block)
            stored.id = next(self._ids)
            self._blocks[stored.id] = stored
            return copy.deepcopy(stored)

    def remove_block(self, block_id: int) -> None:
        with self._lock:
            if self._blocks.pop(block_id, None) is None:
                raise NotFoundError(f"Manual block not found: {block_id}")

    # Reservations

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            return copy.deepcopy(reservation) if reservation else None

    def list_reservations(
        self,
        book_id: str,
        start: date,
        end: Optional[date] = None,
        statuses: Optional[Sequence[ReservationStatus]] = None,
    ) -> List[Reservation]:
        end = end or start
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            found = [
                copy.deepcopy(reservation)
                for reservation in self._reservations.values()
                if reservation.book_id == book_id
                and start <= reservation.date <= end
                and (wanted is None or reservation.status in wanted)
            ]
        return sorted(found, key=lambda r: (r.date, r.time_range))

    def add_reservation(self, reservation: Reservation) -> Reservation:
        with self._lock:
            if reservation.id in self._reservations:
                raise ConflictError(f"Reservation already exists: {reservation.id}")
            if reservation.is_active:
                for existing in self._reservations.values():
                    if (
                        existing.is_active
                        and existing.book_id == reservation.book_id
                        and existing.date == reservation.date
                        and existing.time_range.overlaps(reservation.time_range)
                    ):
                        raise OverlapConstraintError(
                            f"Reservation {reservation.id} overlaps {existing.id} "
                            f"on {reservation.date.isoformat()}"
                        )
            self._reservations[reservation.id] = copy.deepcopy(reservation)
            pending = getattr(self._local, "written", None)
            if pending is not None:
                pending.append(reservation.id)
            return copy.deepcopy(reservation)

    def update_reservation_status(self, reservation_id: str, status: ReservationStatus) -> Reservation:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is None:
                raise NotFoundError(f"Reservation not found: {reservation_id}")
            reservation.status = ReservationStatus(status)
            return copy.deepcopy(reservation)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        """
        Unit of work for the calling thread.

        Reservations added inside the block are removed again if it raises.
        """
        outer = getattr(self._local, "written", None)
        self._local.written = []
        try:
            yield self
        except BaseException:
            with self._lock:
                for reservation_id in self._local.written:
                    self._reservations.pop(reservation_id, None)
            raise
        finally:
            written = self._local.written
            self._local.written = outer
            if outer is not None:
                outer.extend(written)

    def load_json(self, path: Path) -> None:
        """
        Seed the store from a JSON fixture.

        Format:
        {
            "books": [{"id": "...", "name": "...", "weeklyHours": {"monday": ["09:00", "17:00"]}}],
            "exceptions": [{"bookId": "...", "date": "YYYY-MM-DD", "type": "UNAVAILABLE"}],
            "blocks": [{"bookId": "...", "date": "...", "startTime": "12:00", "endTime": "13:00"}],
            "reservations": [{"id": "...", "bookId": "...", "date": "...",
                              "startTime": "...", "endTime": "...", "status": "CONFIRMED"}]
        }
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        for item in data.get("books", []):
            self.save_book(Book(
                id=item["id"],
                name=item.get("name", item["id"]),
                template=WeeklyTemplate.from_names({
                    day: MinuteRange.parse(*bounds)
                    for day, bounds in item.get("weeklyHours", {}).items()
                }),
                is_active=item.get("isActive", True),
                start_date=_parse_optional_date(item.get("startDate")),
                end_date=_parse_optional_date(item.get("endDate")),
            ))

        for item in data.get("exceptions", []):
            custom = None
            if item.get("customStartTime") and item.get("customEndTime"):
                custom = MinuteRange.parse(item["customStartTime"], item["customEndTime"])
            self.add_exception(AvailabilityException(
                book_id=item["bookId"],
                date=_parse_date(item["date"]),
                kind=ExceptionKind(item["type"]),
                custom_hours=custom,
                reason=item.get("reason"),
            ))

        for item in data.get("blocks", []):
            self.add_block(ManualBlock(
                book_id=item["bookId"],
                date=_parse_date(item["date"]),
                time_range=MinuteRange.parse(item["startTime"], item["endTime"]),
                notes=item.get("notes"),
            ))

        for item in data.get("reservations", []):
            self.add_reservation(Reservation(
                id=item["id"],
                book_id=item["bookId"],
                date=_parse_date(item["date"]),
                time_range=MinuteRange.parse(item["startTime"], item["endTime"]),
                status=ReservationStatus(item.get("status", "CONFIRMED")),
            ))

        logger.debug("Loaded %s into memory store", path)


def _parse_date(value: str) -> date:
    return pendulum.from_format(value, "YYYY-MM-DD").date()


def _parse_optional_date(value: Optional[str]) -> Optional[date]:
    return _parse_date(value) if value else None
