"""
Tests for the availability queries on top of a store.
"""

from datetime import date

import pytest

from slotbooker.adapters.clock import FixedClock
from slotbooker.domain.exceptions import NotFoundError
from slotbooker.domain.interval_calculus import AvailabilityCalculator
from slotbooker.domain.models import ExceptionKind, MinuteRange, ReservationStatus
from slotbooker.services.booking_engine import BookingEngine

from conftest import MONDAY, SUNDAY


class CountingCalculator(AvailabilityCalculator):
    """Calculator spy recording how often starts are enumerated."""

    def __init__(self, granularity_minutes=30):
        super().__init__(granularity_minutes)
        self.enumerations = 0

    def bookable_starts(self, free, duration_minutes, granularity_minutes=None):
        self.enumerations += 1
        return super().bookable_starts(free, duration_minutes, granularity_minutes)


class TestDayAvailability:

    def test_subtraction_example(self, engine):
        """Monday 09-17 with a 10-11 reservation and a 15:00-15:30 block."""
        engine.create_reservation("flash", MONDAY, 600, 660)
        engine.add_block("flash", MONDAY, MinuteRange(900, 930), notes="call")

        free = engine.get_day_availability("flash", MONDAY)

        assert free == [MinuteRange(540, 600), MinuteRange(660, 900), MinuteRange(930, 1020)]

    def test_idempotent(self, engine):
        engine.add_block("flash", MONDAY, MinuteRange(720, 780))

        assert engine.get_day_availability("flash", MONDAY) == engine.get_day_availability("flash", MONDAY)

    def test_duration_filters_short_intervals(self, engine):
        engine.add_block("flash", MONDAY, MinuteRange(570, 990))

        assert engine.get_day_availability("flash", MONDAY, 30) == [MinuteRange(540, 570), MinuteRange(990, 1020)]
        assert engine.get_day_availability("flash", MONDAY, 45) == []

    def test_unavailable_exception_shadows_everything(self, engine):
        engine.add_block("flash", MONDAY, MinuteRange(600, 660))
        engine.add_exception("flash", MONDAY, ExceptionKind.UNAVAILABLE, reason="Convention")

        assert engine.get_day_availability("flash", MONDAY) == []
        assert engine.get_bookable_starts("flash", MONDAY, 30) == []

    def test_custom_hours_with_block(self, engine):
        engine.add_exception("flash", MONDAY, ExceptionKind.CUSTOM_HOURS, MinuteRange.parse("12:00", "16:00"))
        engine.add_block("flash", MONDAY, MinuteRange(780, 840))

        assert engine.get_day_availability("flash", MONDAY) == [MinuteRange(720, 780), MinuteRange(840, 960)]

    def test_closed_weekday_ignores_blocks(self, engine):
        engine.add_block("flash", SUNDAY, MinuteRange(600, 660))

        assert engine.get_day_availability("flash", SUNDAY) == []

    def test_unknown_book(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_day_availability("nope", MONDAY)

    def test_bookable_starts_containment(self, engine):
        engine.create_reservation("flash", MONDAY, 600, 660)
        free = engine.get_day_availability("flash", MONDAY)

        starts = engine.get_bookable_starts("flash", MONDAY, 90, granularity_minutes=15)

        assert starts
        for start in starts:
            assert any(i.start <= start and start + 90 <= i.end for i in free)

    def test_earliest_slot(self, engine):
        engine.create_reservation("flash", MONDAY, 540, 600)

        assert engine.get_earliest_slot("flash", MONDAY, 60) == MinuteRange(600, 660)


class TestClockFiltering:
    """The injected clock removes the past from every answer."""

    def test_past_day_is_closed(self, engine, clock):
        clock.advance(days=30)  # 2024-11-30

        assert engine.get_day_availability("flash", MONDAY) == []

    def test_today_starts_at_next_grid_point(self, store, notifier):
        clock = FixedClock.at("2024-11-25 10:07")
        engine = BookingEngine(store, clock, AvailabilityCalculator(granularity_minutes=30), notifier=notifier)

        assert engine.get_day_availability("flash", MONDAY) == [MinuteRange(630, 1020)]
        assert engine.get_bookable_starts("flash", MONDAY, 60)[0] == 630

    def test_today_after_closing(self, store):
        engine = BookingEngine(store, FixedClock.at("2024-11-25 17:30"))

        assert engine.get_day_availability("flash", MONDAY) == []


class TestMonthAvailability:

    def test_month_summary_and_cancellation(self, engine):
        """
        Closed on Sundays, one Monday fully booked, every other day open.
        Cancelling the booking reopens that Monday.
        """
        reservation = engine.create_reservation("flash", MONDAY, 540, 1020)

        availability = engine.get_month_availability("flash", 2024, 11, 60)

        assert len(availability) == 30
        for day, is_open in availability.items():
            if day.weekday() == 6 or day == MONDAY:
                assert is_open is False, day
            else:
                assert is_open is True, day

        engine.cancel_reservation(reservation.id)

        assert engine.get_month_availability("flash", 2024, 11, 60)[MONDAY] is True

    def test_exception_and_long_duration(self, engine):
        engine.add_exception("flash", date(2024, 11, 4), ExceptionKind.UNAVAILABLE)
        engine.add_exception(
            "flash", date(2024, 11, 5), ExceptionKind.CUSTOM_HOURS, MinuteRange.parse("10:00", "12:00")
        )

        availability = engine.get_month_availability("flash", 2024, 11, 180)

        assert availability[date(2024, 11, 4)] is False
        assert availability[date(2024, 11, 5)] is False
        assert availability[date(2024, 11, 6)] is True

    def test_month_does_not_enumerate_starts(self, store, clock):
        calculator = CountingCalculator()
        engine = BookingEngine(store, clock, calculator)

        engine.get_month_availability("flash", 2024, 11, 60)

        assert calculator.enumerations == 0

    def test_days_before_today_are_closed(self, store):
        engine = BookingEngine(store, FixedClock.at("2024-11-15 12:00"))

        availability = engine.get_month_availability("flash", 2024, 11, 60)

        assert not any(is_open for day, is_open in availability.items() if day < date(2024, 11, 15))
        assert availability[date(2024, 11, 15)] is True
        assert availability[date(2024, 11, 16)] is True


class TestMonthOverview:

    def test_lists_everything_scheduled(self, engine):
        kept = engine.create_reservation("flash", MONDAY, 600, 660)
        dropped = engine.create_reservation("flash", MONDAY, 720, 780)
        engine.cancel_reservation(dropped.id)
        engine.add_block("flash", date(2024, 11, 12), MinuteRange(720, 780), notes="lunch")
        engine.add_exception("flash", date(2024, 11, 30), ExceptionKind.UNAVAILABLE)
        engine.add_block("flash", date(2024, 12, 2), MinuteRange(720, 780))

        overview = engine.get_month_overview("flash", 2024, 11)

        assert [r.id for r in overview.reservations] == [kept.id]
        assert [b.notes for b in overview.blocks] == ["lunch"]
        assert [e.date for e in overview.exceptions] == [date(2024, 11, 30)]

    def test_completed_reservations_and_stats(self, engine):
        done = engine.create_reservation("flash", MONDAY, 540, 630)
        engine.confirm_reservation(done.id)
        engine.complete_reservation(done.id)
        upcoming = engine.create_reservation("flash", MONDAY, 660, 720)
        engine.confirm_reservation(upcoming.id)
        engine.create_reservation("flash", MONDAY, 780, 840)

        overview = engine.get_month_overview("flash", 2024, 11)

        assert [r.status for r in overview.reservations] == [
            ReservationStatus.COMPLETED,
            ReservationStatus.CONFIRMED,
            ReservationStatus.PENDING,
        ]
        assert overview.confirmed_count == 1
        assert overview.completed_count == 1
        assert overview.total_hours == 1.5
        # Completed work no longer blocks the calendar
        assert engine.get_day_availability("flash", MONDAY)[0] == MinuteRange(540, 660)
