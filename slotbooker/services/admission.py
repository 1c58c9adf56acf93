"""
Reservation admission: validate a requested slot against the live schedule
and commit it exactly once, plus the status transitions that follow.

The read-check-write span runs under the per-(book, date) lock and inside a
single store transaction. Notifications go out only after the commit and
after the lock is released.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Optional, Protocol, Tuple

from ..adapters.clock import Clock
from ..adapters.notifier import (
    RESERVATION_CANCELLED,
    RESERVATION_CONFIRMED,
    RESERVATION_CREATED,
    LoggingNotifier,
    NotificationDispatcher,
    ReservationEvent,
)
from ..domain.exceptions import (
    BookClosedError,
    DataIntegrityError,
    InvalidRangeError,
    InvalidTransitionError,
    LockTimeoutError,
    NotFoundError,
    PaymentRequiredError,
    SlotNoLongerAvailableError,
    StorageError,
)
from ..domain.interval_calculus import AvailabilityCalculator
from ..domain.models import (
    ACTIVE_STATUSES,
    MINUTES_PER_DAY,
    MinuteRange,
    Reservation,
    ReservationStatus,
)
from .availability import AvailabilityService
from .locks import SlotLockManager
from .store import SchedulingStore

logger = logging.getLogger(__name__)


class PaymentGate(Protocol):
    """Payment collaborator consulted before a reservation is confirmed."""

    def is_settled(self, reservation: Reservation) -> bool:
        """Return True when the deposit or payment for the reservation is in."""


class ReservationAdmission:
    """
    Admits, confirms, completes and cancels reservations.

    Storage failures during admission are retried with a fresh read of the
    schedule; once retries are spent the request is reported as a lost race.
    """

    def __init__(
        self,
        store: SchedulingStore,
        availability: AvailabilityService,
        locks: SlotLockManager,
        clock: Clock,
        notifier: NotificationDispatcher | None = None,
        storage_retries: int = 1,
    ) -> None:
        self._store = store
        self._availability = availability
        self._locks = locks
        self._clock = clock
        self._notifier = notifier if notifier is not None else LoggingNotifier()
        self.storage_retries = storage_retries

    def request_reservation(
        self,
        book_id: str,
        day: date,
        start_minute: int,
        end_minute: int,
        granularity_minutes: Optional[int] = None,
    ) -> Reservation:
        """
        Admit a reservation for ``[start_minute, end_minute)`` on ``day``.

        Args:
            book_id: Book to reserve
            day: Date of the appointment
            start_minute: Start, minutes since midnight
            end_minute: Exclusive end, minutes since midnight
            granularity_minutes: When set, the start must also lie on the
                grid of bookable starts

        Returns:
            The stored reservation, status PENDING

        Raises:
            InvalidRangeError: If the bounds are malformed or inverted
            NotFoundError: If the book is unknown
            BookClosedError: If the book has no hours on ``day``
            SlotNoLongerAvailableError: If the slot is taken, blocked, locked
                by a concurrent admission or storage kept failing
            DataIntegrityError: If the store already holds overlapping rows
        """
        requested = self._validate_range(start_minute, end_minute)

        try:
            with self._locks.hold(book_id, day):
                reservation = self._admit_with_retries(book_id, day, requested, granularity_minutes)
        except LockTimeoutError as exc:
            raise self._slot_taken(book_id, day, requested, str(exc)) from exc
        except SlotNoLongerAvailableError as exc:
            exc.alternative = self._suggest_alternative(book_id, day, requested)
            raise

        logger.info("Admitted reservation %s: %s", reservation.id, reservation.format_display())
        self._notify(RESERVATION_CREATED, reservation)
        return reservation

    def cancel_reservation(self, reservation_id: str) -> Reservation:
        """
        Mark a reservation CANCELLED; its time is free for the next query.

        Cancelling an already cancelled reservation is a no-op.
        """
        reservation, changed = self._transition(reservation_id, ReservationStatus.CANCELLED, idempotent=True)
        if changed:
            logger.info("Cancelled reservation %s", reservation_id)
            self._notify(RESERVATION_CANCELLED, reservation)
        return reservation

    def confirm_reservation(
        self,
        reservation_id: str,
        payment_gate: PaymentGate | None = None,
    ) -> Reservation:
        """
        Move a PENDING reservation to CONFIRMED.

        The engine does not handle money; a caller that requires payment
        first passes a ``payment_gate``.
        """
        current = self._require_reservation(reservation_id)
        if payment_gate is not None and current.is_active and not payment_gate.is_settled(current):
            raise PaymentRequiredError(f"Payment outstanding for reservation {reservation_id}")

        reservation, _ = self._transition(reservation_id, ReservationStatus.CONFIRMED)
        self._notify(RESERVATION_CONFIRMED, reservation)
        return reservation

    def complete_reservation(self, reservation_id: str) -> Reservation:
        reservation, _ = self._transition(reservation_id, ReservationStatus.COMPLETED)
        return reservation

    def _admit_with_retries(
        self,
        book_id: str,
        day: date,
        requested: MinuteRange,
        granularity_minutes: Optional[int],
    ) -> Reservation:
        attempts = self.storage_retries + 1
        last_error: StorageError | None = None

        for attempt in range(1, attempts + 1):
            try:
                return self._admit_once(book_id, day, requested, granularity_minutes)
            except StorageError as exc:
                last_error = exc
                logger.warning(
                    "Admission attempt %d/%d for %s on %s failed in storage: %s",
                    attempt, attempts, book_id, day, exc
                )

        raise SlotNoLongerAvailableError(
            f"Could not reserve {requested} on {day.isoformat()}: {last_error}"
        )

    def _admit_once(
        self,
        book_id: str,
        day: date,
        requested: MinuteRange,
        granularity_minutes: Optional[int],
    ) -> Reservation:
        with self._store.transaction() as tx:
            tx.lock_book(book_id)
            book = tx.get_book(book_id)
            if book is None:
                raise NotFoundError(f"Book not found: {book_id}")

            if self._availability.base_interval(tx, book, day) is None:
                raise BookClosedError(f"{book.name} is not available on {day.isoformat()}")

            reservations = tx.list_reservations(book_id, day, statuses=tuple(ACTIVE_STATUSES))
            self._check_integrity(book_id, day, reservations)

            free = self._availability.compute_free_intervals(tx, book, day, reservations)
            if not self._availability.calculator.is_bookable(free, requested, granularity_minutes):
                raise SlotNoLongerAvailableError(
                    f"{requested} on {day.isoformat()} is no longer available"
                )

            reservation = Reservation(
                id=uuid.uuid4().hex,
                book_id=book.id,
                date=day,
                time_range=requested,
                status=ReservationStatus.PENDING,
                created_at=self._clock.now(),
            )
            return tx.add_reservation(reservation)

    def _transition(
        self,
        reservation_id: str,
        status: ReservationStatus,
        idempotent: bool = False,
    ) -> Tuple[Reservation, bool]:
        """
        Move a reservation to ``status`` under its (book, date) lock.

        Returns the stored reservation and whether its status changed. With
        ``idempotent`` a reservation already in ``status`` is returned as is.
        """
        current = self._require_reservation(reservation_id)
        with self._locks.hold(current.book_id, current.date):
            with self._store.transaction() as tx:
                reservation = tx.get_reservation(reservation_id)
                if reservation is None:
                    raise NotFoundError(f"Reservation not found: {reservation_id}")
                if idempotent and reservation.status is status:
                    return reservation, False
                if not reservation.can_transition_to(status):
                    raise InvalidTransitionError(
                        f"Reservation {reservation_id} cannot go from {reservation.status.value} to {status.value}"
                    )
                return tx.update_reservation_status(reservation_id, status), True

    def _require_reservation(self, reservation_id: str) -> Reservation:
        reservation = self._store.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation not found: {reservation_id}")
        return reservation

    @staticmethod
    def _validate_range(start_minute: int, end_minute: int) -> MinuteRange:
        if isinstance(start_minute, bool) or isinstance(end_minute, bool):
            raise InvalidRangeError("Times must be minutes since midnight")
        if not isinstance(start_minute, int) or not isinstance(end_minute, int):
            raise InvalidRangeError("Times must be minutes since midnight")
        if not 0 <= start_minute < end_minute <= MINUTES_PER_DAY:
            raise InvalidRangeError(
                f"Start time {start_minute} must be before end time {end_minute} "
                f"within 0..{MINUTES_PER_DAY}"
            )
        return MinuteRange(start=start_minute, end=end_minute)

    @staticmethod
    def _check_integrity(book_id: str, day: date, reservations) -> None:
        overlap = AvailabilityCalculator.find_overlap(reservations)
        if overlap is not None:
            first, second = overlap
            logger.critical(
                "Overlapping active reservations %s (%s) and %s (%s) for %s on %s",
                first.id, first.time_range, second.id, second.time_range, book_id, day
            )
            raise DataIntegrityError(
                f"Reservations {first.id} and {second.id} overlap for {book_id} on {day.isoformat()}"
            )

    def _slot_taken(self, book_id: str, day: date, requested: MinuteRange, reason: str) -> SlotNoLongerAvailableError:
        return SlotNoLongerAvailableError(
            f"{requested} on {day.isoformat()} is no longer available ({reason})",
            alternative=self._suggest_alternative(book_id, day, requested),
        )

    def _suggest_alternative(self, book_id: str, day: date, requested: MinuteRange) -> MinuteRange | None:
        try:
            return self._availability.get_earliest_slot(book_id, day, requested.duration_minutes())
        except StorageError as exc:
            logger.warning("Could not look up an alternative slot for %s on %s: %s", book_id, day, exc)
            return None

    def _notify(self, kind: str, reservation: Reservation) -> None:
        try:
            self._notifier.dispatch(ReservationEvent(kind=kind, reservation=reservation))
        except Exception:
            logger.exception("Dispatching %s for %s failed", kind, reservation.id)
