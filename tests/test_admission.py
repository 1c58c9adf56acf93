"""
Tests for reservation admission, the no-overlap guarantee and the
reservation lifecycle.
"""

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from slotbooker.adapters.memory_store import InMemoryStore
from slotbooker.adapters.notifier import RESERVATION_CANCELLED, RESERVATION_CREATED
from slotbooker.domain.exceptions import (
    BookClosedError,
    DataIntegrityError,
    InvalidRangeError,
    InvalidTransitionError,
    NotFoundError,
    PaymentRequiredError,
    SlotNoLongerAvailableError,
    StorageError,
)
from slotbooker.domain.interval_calculus import AvailabilityCalculator
from slotbooker.domain.models import (
    ExceptionKind,
    MinuteRange,
    Reservation,
    ReservationStatus,
)
from slotbooker.services.booking_engine import BookingEngine
from slotbooker.services.locks import SlotLockManager

from conftest import MONDAY, SUNDAY, flash_book


class FlakyStore(InMemoryStore):
    """Fails the first ``failures`` reservation inserts with a storage error."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def add_reservation(self, reservation):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StorageError("transaction aborted")
        return super().add_reservation(reservation)


class FailingBookLookupStore(InMemoryStore):
    """Fails the first ``failures`` book lookups with a storage error."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.lookups_failed = 0

    def get_book(self, book_id):
        if self.lookups_failed < self.failures:
            self.lookups_failed += 1
            raise StorageError("connection reset")
        return super().get_book(book_id)


class StubPaymentGate:

    def __init__(self, settled):
        self.settled = settled
        self.checked = []

    def is_settled(self, reservation):
        self.checked.append(reservation.id)
        return self.settled


class ExplodingNotifier:

    def dispatch(self, event):
        raise RuntimeError("mail server down")


def _engine_on(store, clock, **kwargs):
    store.save_book(flash_book())
    return BookingEngine(store, clock, AvailabilityCalculator(granularity_minutes=30), **kwargs)


class TestRequestReservation:

    def test_admits_pending_reservation(self, engine, notifier):
        reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        assert reservation.status is ReservationStatus.PENDING
        assert reservation.time_range == MinuteRange(600, 660)
        assert engine.get_reservation(reservation.id) == reservation
        assert [event.kind for event in notifier.events] == [RESERVATION_CREATED]

    def test_read_your_writes(self, engine):
        engine.create_reservation("flash", MONDAY, 600, 660)

        assert MinuteRange(600, 660) not in engine.get_day_availability("flash", MONDAY)
        assert 600 not in engine.get_bookable_starts("flash", MONDAY, 60)

    def test_adjacent_reservations(self, engine):
        engine.create_reservation("flash", MONDAY, 600, 660)
        engine.create_reservation("flash", MONDAY, 660, 720)

        assert engine.get_day_availability("flash", MONDAY) == [MinuteRange(540, 600), MinuteRange(720, 1020)]

    @pytest.mark.parametrize("start,end", [(660, 600), (600, 600), (-30, 600), (1400, 1450), (600.0, 660), (True, 660)])
    def test_invalid_range(self, engine, start, end):
        with pytest.raises(InvalidRangeError):
            engine.create_reservation("flash", MONDAY, start, end)

    def test_invalid_range_is_a_value_error(self, engine):
        with pytest.raises(ValueError):
            engine.create_reservation("flash", MONDAY, 700, 600)

    def test_unknown_book(self, engine):
        with pytest.raises(NotFoundError):
            engine.create_reservation("nope", MONDAY, 600, 660)

    def test_closed_weekday(self, engine):
        with pytest.raises(BookClosedError):
            engine.create_reservation("flash", SUNDAY, 600, 660)

    def test_unavailable_exception(self, engine):
        engine.add_exception("flash", MONDAY, ExceptionKind.UNAVAILABLE)

        with pytest.raises(BookClosedError):
            engine.create_reservation("flash", MONDAY, 600, 660)

    def test_overlapping_reservation_rejected_with_alternative(self, engine):
        engine.create_reservation("flash", MONDAY, 540, 600)
        engine.create_reservation("flash", MONDAY, 600, 660)

        with pytest.raises(SlotNoLongerAvailableError) as excinfo:
            engine.create_reservation("flash", MONDAY, 630, 690)

        assert excinfo.value.alternative == MinuteRange(660, 720)

    def test_block_landed_first(self, engine):
        engine.add_block("flash", MONDAY, MinuteRange(615, 630), notes="phone call")

        with pytest.raises(SlotNoLongerAvailableError):
            engine.create_reservation("flash", MONDAY, 600, 660)

    def test_outside_working_hours(self, engine):
        with pytest.raises(SlotNoLongerAvailableError):
            engine.create_reservation("flash", MONDAY, 990, 1050)

    def test_past_date(self, engine, clock):
        clock.advance(days=60)

        with pytest.raises(SlotNoLongerAvailableError):
            engine.create_reservation("flash", MONDAY, 600, 660)

    def test_grid_alignment_when_requested(self, engine):
        with pytest.raises(SlotNoLongerAvailableError):
            engine.create_reservation("flash", MONDAY, 555, 615, granularity_minutes=30)

        reservation = engine.create_reservation("flash", MONDAY, 570, 630, granularity_minutes=30)
        assert reservation.time_range.start == 570

    def test_cancelled_reservation_does_not_block(self, engine):
        first = engine.create_reservation("flash", MONDAY, 600, 660)
        engine.cancel_reservation(first.id)

        second = engine.create_reservation("flash", MONDAY, 600, 660)

        assert second.id != first.id

    def test_notifier_failure_does_not_fail_admission(self, store, clock, caplog):
        engine = _engine_on(store, clock, notifier=ExplodingNotifier())

        with caplog.at_level(logging.ERROR):
            reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        assert store.get_reservation(reservation.id) is not None
        assert "failed" in caplog.text


class TestConcurrency:

    def test_admission_race(self, engine):
        """Two simultaneous requests for 10:00-11:00: exactly one wins."""
        barrier = threading.Barrier(2)

        def attempt():
            barrier.wait()
            try:
                return engine.create_reservation("flash", MONDAY, 600, 660)
            except SlotNoLongerAvailableError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: attempt(), range(2)))

        winners = [r for r in results if isinstance(r, Reservation)]
        losers = [r for r in results if isinstance(r, SlotNoLongerAvailableError)]
        assert len(winners) == 1
        assert len(losers) == 1

    def test_no_overlap_after_many_concurrent_admissions(self, engine, store):
        rng = random.Random(7)
        requests = []
        for _ in range(60):
            start = rng.randrange(540, 990, 15)
            requests.append((start, min(1020, start + rng.choice([30, 45, 60, 90]))))

        def attempt(bounds):
            try:
                return engine.create_reservation("flash", MONDAY, *bounds)
            except SlotNoLongerAvailableError:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            admitted = [r for r in pool.map(attempt, requests) if r is not None]

        stored = store.list_reservations("flash", MONDAY)
        assert len(stored) == len(admitted) > 0
        assert AvailabilityCalculator.find_overlap(stored) is None

    def test_injected_lock_manager_is_used(self, store, clock):
        locks = SlotLockManager(timeout_seconds=0.05)

        engine = BookingEngine(store, clock, locks=locks)

        assert engine.admission._locks is locks

    def test_engines_sharing_a_lock_manager_exclude_each_other(self, store, clock):
        locks = SlotLockManager(timeout_seconds=0.05)
        first = BookingEngine(store, clock, locks=locks)
        second = BookingEngine(store, clock, locks=locks)

        with locks.hold("flash", MONDAY):
            for engine in (first, second):
                with pytest.raises(SlotNoLongerAvailableError):
                    engine.create_reservation("flash", MONDAY, 600, 660)

        assert store.list_reservations("flash", MONDAY) == []

    def test_lock_timeout_reports_slot_taken(self, store, clock):
        locks = SlotLockManager(timeout_seconds=0.05)
        engine = _engine_on(store, clock, locks=locks)

        with locks.hold("flash", MONDAY):
            with pytest.raises(SlotNoLongerAvailableError):
                engine.create_reservation("flash", MONDAY, 600, 660)

        assert engine.create_reservation("flash", MONDAY, 600, 660).status is ReservationStatus.PENDING

    def test_other_dates_are_not_locked(self, store, clock):
        locks = SlotLockManager(timeout_seconds=0.05)
        engine = _engine_on(store, clock, locks=locks)

        with locks.hold("flash", SUNDAY):
            reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        assert reservation.status is ReservationStatus.PENDING


class TestStorageFailures:

    def test_retried_once(self, clock):
        store = FlakyStore(failures=1)
        engine = _engine_on(store, clock)

        reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        assert store.attempts == 2
        assert store.get_reservation(reservation.id) is not None

    def test_gives_up_after_retry(self, clock):
        store = FlakyStore(failures=5)
        engine = _engine_on(store, clock)

        with pytest.raises(SlotNoLongerAvailableError):
            engine.create_reservation("flash", MONDAY, 600, 660)

        assert store.attempts == 2
        assert store.list_reservations("flash", MONDAY) == []

    def test_book_lookup_failure_is_retried(self, clock):
        store = FailingBookLookupStore(failures=1)
        engine = _engine_on(store, clock)

        reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        assert store.lookups_failed == 1
        assert store.get_reservation(reservation.id) is not None

    def test_book_lookup_failing_reports_slot_taken(self, clock):
        store = FailingBookLookupStore(failures=100)
        engine = _engine_on(store, clock)

        with pytest.raises(SlotNoLongerAvailableError) as excinfo:
            engine.create_reservation("flash", MONDAY, 600, 660)

        assert excinfo.value.alternative is None
        assert store.list_reservations("flash", MONDAY) == []

    def test_overlapping_rows_are_an_integrity_fault(self, store, engine, caplog):
        # Bypass the store's own constraint to simulate corrupted data
        for rid, bounds in (("a", (600, 700)), ("b", (650, 720))):
            store._reservations[rid] = Reservation(
                id=rid,
                book_id="flash",
                date=MONDAY,
                time_range=MinuteRange(*bounds),
                status=ReservationStatus.CONFIRMED,
            )

        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(DataIntegrityError):
                engine.create_reservation("flash", MONDAY, 900, 960)

        assert "Overlapping active reservations" in caplog.text


class TestLifecycle:

    def test_cancel(self, engine, notifier):
        reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        cancelled = engine.cancel_reservation(reservation.id)

        assert cancelled.status is ReservationStatus.CANCELLED
        assert engine.get_day_availability("flash", MONDAY) == [MinuteRange(540, 1020)]
        assert [event.kind for event in notifier.events] == [RESERVATION_CREATED, RESERVATION_CANCELLED]

    def test_cancel_twice_is_a_no_op(self, engine, notifier):
        reservation = engine.create_reservation("flash", MONDAY, 600, 660)
        engine.cancel_reservation(reservation.id)

        assert engine.cancel_reservation(reservation.id).status is ReservationStatus.CANCELLED
        assert len(notifier.events) == 2

    def test_concurrent_cancels_are_idempotent(self, engine, notifier):
        reservation = engine.create_reservation("flash", MONDAY, 600, 660)
        barrier = threading.Barrier(4)

        def cancel():
            barrier.wait()
            return engine.cancel_reservation(reservation.id)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: cancel(), range(4)))

        assert all(r.status is ReservationStatus.CANCELLED for r in results)
        assert [event.kind for event in notifier.events] == [RESERVATION_CREATED, RESERVATION_CANCELLED]

    def test_cancel_unknown(self, engine):
        with pytest.raises(NotFoundError):
            engine.cancel_reservation("missing")

    def test_confirm_and_complete(self, engine):
        reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        assert engine.confirm_reservation(reservation.id).status is ReservationStatus.CONFIRMED
        assert engine.complete_reservation(reservation.id).status is ReservationStatus.COMPLETED

    def test_confirm_requires_settled_payment(self, engine):
        reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        with pytest.raises(PaymentRequiredError):
            engine.confirm_reservation(reservation.id, payment_gate=StubPaymentGate(settled=False))
        assert engine.get_reservation(reservation.id).status is ReservationStatus.PENDING

        gate = StubPaymentGate(settled=True)
        assert engine.confirm_reservation(reservation.id, payment_gate=gate).status is ReservationStatus.CONFIRMED
        assert gate.checked == [reservation.id]

    def test_confirmed_reservation_still_occupies_time(self, engine):
        reservation = engine.create_reservation("flash", MONDAY, 600, 660)
        engine.confirm_reservation(reservation.id)

        with pytest.raises(SlotNoLongerAvailableError):
            engine.create_reservation("flash", MONDAY, 600, 660)

    def test_invalid_transitions(self, engine):
        reservation = engine.create_reservation("flash", MONDAY, 600, 660)

        with pytest.raises(InvalidTransitionError):
            engine.complete_reservation(reservation.id)

        engine.cancel_reservation(reservation.id)
        with pytest.raises(InvalidTransitionError):
            engine.confirm_reservation(reservation.id)
