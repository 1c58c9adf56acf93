"""
Domain models for books, schedules and reservations.

All times of day are integer minutes since midnight. A day runs from 0 to
1440 (the latter only valid as an exclusive end bound).
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

MINUTES_PER_DAY = 1440

WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def parse_clock_time(value: str) -> int:
    """
    Parse an ``HH:MM`` string into minutes since midnight.

    ``24:00`` is accepted as the end-of-day bound.

    Raises:
        ValueError: If the string is not a valid time of day
    """
    try:
        hours_str, minutes_str = value.strip().split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError):
        raise ValueError(f"Time must be in HH:MM format, got {value!r}")

    if not (0 <= minutes < 60 and 0 <= hours <= 24) or (hours == 24 and minutes):
        raise ValueError(f"Time out of range: {value!r}")

    return hours * 60 + minutes


def format_clock_time(minutes: int) -> str:
    """Format minutes since midnight as ``HH:MM``."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True, order=True)
class MinuteRange:
    """
    Half-open range ``[start, end)`` of minutes within one day.

    Invariant: 0 <= start < end <= 1440.
    """
    start: int
    end: int

    def __post_init__(self):
        if not 0 <= self.start < self.end <= MINUTES_PER_DAY:
            raise ValueError(
                f"Start time {self.start} must be before end time {self.end} "
                f"within 0..{MINUTES_PER_DAY}"
            )

    @classmethod
    def parse(cls, start: str, end: str) -> "MinuteRange":
        """Build a range from two ``HH:MM`` strings."""
        return cls(start=parse_clock_time(start), end=parse_clock_time(end))

    def duration_minutes(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "MinuteRange") -> bool:
        """Check if this range shares at least one minute with another."""
        return self.start < other.end and self.end > other.start

    def contains(self, other: "MinuteRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def __str__(self) -> str:
        return f"{format_clock_time(self.start)} - {format_clock_time(self.end)}"


@dataclass
class WeeklyTemplate:
    """
    Recurring working hours, one optional range per weekday (0=Monday, 6=Sunday).
    """
    hours: Dict[int, MinuteRange] = field(default_factory=dict)

    def __post_init__(self):
        invalid_days = [day for day in self.hours if day not in range(7)]
        if invalid_days:
            raise ValueError(f"Weekdays must be between 0 and 6, got {invalid_days}")

    @classmethod
    def from_names(cls, hours: Dict[str, MinuteRange]) -> "WeeklyTemplate":
        """Build a template keyed by lowercase weekday names."""
        by_index: Dict[int, MinuteRange] = {}
        for name, time_range in hours.items():
            key = name.lower()
            if key not in WEEKDAY_NAMES:
                raise ValueError(f"Unknown weekday: {name!r}")
            by_index[WEEKDAY_NAMES.index(key)] = time_range
        return cls(hours=by_index)

    def hours_for_day(self, day: date) -> MinuteRange | None:
        """Working hours for the weekday of ``day``, None if closed."""
        return self.hours.get(day.weekday())

    def to_names(self) -> Dict[str, MinuteRange]:
        return {WEEKDAY_NAMES[index]: self.hours[index] for index in sorted(self.hours)}


@dataclass
class Book:
    """
    A bookable offering with its own weekly schedule.

    An inactive book, or a date outside the optional active window, has no
    working hours at all.
    """
    id: str
    name: str
    template: WeeklyTemplate = field(default_factory=WeeklyTemplate)
    is_active: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError(
                f"Book {self.id}: start_date {self.start_date} is after end_date {self.end_date}"
            )

    def is_open_on(self, day: date) -> bool:
        """Check whether the book takes bookings on ``day`` at all."""
        if not self.is_active:
            return False
        if self.start_date and day < self.start_date:
            return False
        if self.end_date and day > self.end_date:
            return False
        return True


class ExceptionKind(str, Enum):
    UNAVAILABLE = "UNAVAILABLE"
    CUSTOM_HOURS = "CUSTOM_HOURS"


@dataclass
class AvailabilityException:
    """
    Date-specific override that replaces the weekly template for one day.
    """
    book_id: str
    date: date
    kind: ExceptionKind
    custom_hours: Optional[MinuteRange] = None
    reason: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.kind = ExceptionKind(self.kind)
        if self.kind is ExceptionKind.CUSTOM_HOURS and self.custom_hours is None:
            raise ValueError("Custom hours require start and end times")


@dataclass
class ManualBlock:
    """Provider-created closed interval, e.g. lunch or a dentist appointment."""
    book_id: str
    date: date
    time_range: MinuteRange
    notes: Optional[str] = None
    id: Optional[int] = None


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


# Statuses that take time away from the live schedule
ACTIVE_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.CONFIRMED})

SCHEDULED_STATUSES = ACTIVE_STATUSES | {ReservationStatus.COMPLETED}

ALLOWED_TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED},
    ReservationStatus.CONFIRMED: {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED},
    ReservationStatus.CANCELLED: set(),
    ReservationStatus.COMPLETED: set(),
}


@dataclass
class Reservation:
    """A client's claim on ``time_range`` of ``date`` for one book."""
    id: str
    book_id: str
    date: date
    time_range: MinuteRange
    status: ReservationStatus = ReservationStatus.PENDING
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = ReservationStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def can_transition_to(self, status: ReservationStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def format_display(self) -> str:
        """
        Format the reservation for display.
        Format: Weekday, YYYY-MM-DD | HH:MM - HH:MM (status)
        """
        weekday = WEEKDAY_NAMES[self.date.weekday()].capitalize()
        return (
            f"{weekday}, {self.date.isoformat()} | {self.time_range} "
            f"({self.time_range.duration_minutes()} min, {self.status.value})"
        )


@dataclass
class MonthOverview:
    """
    Everything scheduled for one book in one month, for the artist's calendar.

    Cancelled reservations are left out; completed ones stay for reporting.
    """
    book_id: str
    year: int
    month: int
    exceptions: List[AvailabilityException] = field(default_factory=list)
    blocks: List[ManualBlock] = field(default_factory=list)
    reservations: List[Reservation] = field(default_factory=list)

    @property
    def confirmed_count(self) -> int:
        return sum(1 for r in self.reservations if r.status is ReservationStatus.CONFIRMED)

    @property
    def completed_count(self) -> int:
        return sum(1 for r in self.reservations if r.status is ReservationStatus.COMPLETED)

    @property
    def total_hours(self) -> float:
        """Hours of completed work in the month."""
        minutes = sum(
            r.time_range.duration_minutes()
            for r in self.reservations
            if r.status is ReservationStatus.COMPLETED
        )
        return minutes / 60
