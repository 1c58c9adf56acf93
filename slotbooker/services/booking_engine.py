"""
Application facade for request handlers.

``BookingEngine`` wires the store, the calculator, the clock, the admission
lock registry and the notifier together and exposes the operations callers
use: availability queries, reservation admission and lifecycle, and the
artist's schedule edits. Who may call what is decided by the caller.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional

from ..adapters.clock import Clock, SystemClock
from ..adapters.notifier import (
    BackgroundNotifier,
    LoggingNotifier,
    NotificationDispatcher,
    WebhookNotifier,
)
from ..config import AppConfig
from ..domain.exceptions import NotFoundError
from ..domain.interval_calculus import AvailabilityCalculator
from ..domain.models import (
    AvailabilityException,
    Book,
    ExceptionKind,
    ManualBlock,
    MinuteRange,
    MonthOverview,
    Reservation,
)
from .admission import PaymentGate, ReservationAdmission
from .availability import AvailabilityService
from .locks import SlotLockManager
from .store import SchedulingStore

logger = logging.getLogger(__name__)


class BookingEngine:
    """
    Availability and booking operations for one store.
    """

    def __init__(
        self,
        store: SchedulingStore,
        clock: Clock,
        calculator: AvailabilityCalculator | None = None,
        locks: SlotLockManager | None = None,
        notifier: NotificationDispatcher | None = None,
        storage_retries: int = 1,
    ) -> None:
        self.store = store
        self.calculator = calculator if calculator is not None else AvailabilityCalculator()
        self.availability = AvailabilityService(store, self.calculator, clock)
        self.admission = ReservationAdmission(
            store,
            self.availability,
            locks if locks is not None else SlotLockManager(),
            clock,
            notifier=notifier,
            storage_retries=storage_retries,
        )

    # Availability

    def get_day_availability(
        self,
        book_id: str,
        day: date,
        duration_minutes: Optional[int] = None,
    ) -> List[MinuteRange]:
        return self.availability.get_day_availability(book_id, day, duration_minutes)

    def get_bookable_starts(
        self,
        book_id: str,
        day: date,
        duration_minutes: int,
        granularity_minutes: Optional[int] = None,
    ) -> List[int]:
        return self.availability.get_bookable_starts(book_id, day, duration_minutes, granularity_minutes)

    def get_month_availability(
        self,
        book_id: str,
        year: int,
        month: int,
        duration_minutes: int,
        granularity_minutes: Optional[int] = None,
    ) -> Dict[date, bool]:
        return self.availability.get_month_availability(
            book_id, year, month, duration_minutes, granularity_minutes
        )

    def get_earliest_slot(self, book_id: str, day: date, duration_minutes: int) -> MinuteRange | None:
        return self.availability.get_earliest_slot(book_id, day, duration_minutes)

    def get_month_overview(self, book_id: str, year: int, month: int) -> MonthOverview:
        return self.availability.get_month_overview(book_id, year, month)

    # Reservations

    def create_reservation(
        self,
        book_id: str,
        day: date,
        start_minute: int,
        end_minute: int,
        granularity_minutes: Optional[int] = None,
    ) -> Reservation:
        return self.admission.request_reservation(
            book_id, day, start_minute, end_minute, granularity_minutes
        )

    def cancel_reservation(self, reservation_id: str) -> Reservation:
        return self.admission.cancel_reservation(reservation_id)

    def confirm_reservation(self, reservation_id: str, payment_gate: PaymentGate | None = None) -> Reservation:
        return self.admission.confirm_reservation(reservation_id, payment_gate)

    def complete_reservation(self, reservation_id: str) -> Reservation:
        return self.admission.complete_reservation(reservation_id)

    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.store.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation not found: {reservation_id}")
        return reservation

    # Schedule edits

    def save_book(self, book: Book) -> Book:
        return self.store.save_book(book)

    def list_books(self) -> List[Book]:
        return self.store.list_books()

    def add_exception(
        self,
        book_id: str,
        day: date,
        kind: ExceptionKind,
        custom_hours: MinuteRange | None = None,
        reason: str | None = None,
    ) -> AvailabilityException:
        """
        Close a day or replace its hours. Existing reservations are kept.
        """
        self._require_book(book_id)
        exception = self.store.add_exception(AvailabilityException(
            book_id=book_id,
            date=day,
            kind=kind,
            custom_hours=custom_hours,
            reason=reason,
        ))
        logger.info("Added %s exception for %s on %s", exception.kind.value, book_id, day)
        return exception

    def remove_exception(self, exception_id: int) -> None:
        self.store.remove_exception(exception_id)

    def add_block(
        self,
        book_id: str,
        day: date,
        time_range: MinuteRange,
        notes: str | None = None,
    ) -> ManualBlock:
        """Block time manually. Existing reservations are kept."""
        self._require_book(book_id)
        block = self.store.add_block(ManualBlock(book_id=book_id, date=day, time_range=time_range, notes=notes))
        logger.info("Blocked %s on %s for %s", time_range, day, book_id)
        return block

    def remove_block(self, block_id: int) -> None:
        self.store.remove_block(block_id)

    def _require_book(self, book_id: str) -> Book:
        book = self.store.get_book(book_id)
        if book is None:
            raise NotFoundError(f"Book not found: {book_id}")
        return book


def build_notifier(config: AppConfig) -> NotificationDispatcher:
    """Webhook delivery on a background pool when configured, log lines otherwise."""
    settings = config.notifications
    if settings.webhook_url:
        return BackgroundNotifier(
            WebhookNotifier(settings.webhook_url, timeout_seconds=settings.timeout_seconds),
            max_workers=settings.max_workers,
        )
    return LoggingNotifier()


def build_booking_engine(
    config: AppConfig,
    store: SchedulingStore,
    clock: Clock | None = None,
    notifier: NotificationDispatcher | None = None,
) -> BookingEngine:
    """Assemble a ``BookingEngine`` from configuration."""
    return BookingEngine(
        store=store,
        clock=clock if clock is not None else SystemClock(config.timezone),
        calculator=AvailabilityCalculator(granularity_minutes=config.defaults.granularity_minutes),
        locks=SlotLockManager(timeout_seconds=config.admission.lock_timeout_seconds),
        notifier=notifier if notifier is not None else build_notifier(config),
        storage_retries=config.admission.storage_retries,
    )
