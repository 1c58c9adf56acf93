"""
Shared fixtures: one book open Monday to Saturday 09:00-17:00, a clock
pinned before November 2024 and an engine on the in-memory store.
"""

from datetime import date

import pytest

from slotbooker.adapters.clock import FixedClock
from slotbooker.adapters.memory_store import InMemoryStore
from slotbooker.adapters.notifier import RecordingNotifier
from slotbooker.domain.interval_calculus import AvailabilityCalculator
from slotbooker.domain.models import Book, MinuteRange, WeeklyTemplate
from slotbooker.services.booking_engine import BookingEngine
from slotbooker.services.locks import SlotLockManager

MONDAY = date(2024, 11, 25)
SUNDAY = date(2024, 11, 24)
NINE_TO_FIVE = MinuteRange(start=540, end=1020)


def weekday_template() -> WeeklyTemplate:
    """Monday to Saturday 09:00-17:00, closed on Sunday."""
    return WeeklyTemplate(hours={day: NINE_TO_FIVE for day in range(6)})


def flash_book(**overrides) -> Book:
    fields = {"id": "flash", "name": "Flash Day", "template": weekday_template()}
    fields.update(overrides)
    return Book(**fields)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock.at("2024-10-31 08:00", timezone="Europe/Berlin")


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.save_book(flash_book())
    return store


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def locks() -> SlotLockManager:
    return SlotLockManager(timeout_seconds=2.0)


@pytest.fixture
def engine(store, clock, locks, notifier) -> BookingEngine:
    return BookingEngine(
        store=store,
        clock=clock,
        calculator=AvailabilityCalculator(granularity_minutes=30),
        locks=locks,
        notifier=notifier,
    )
