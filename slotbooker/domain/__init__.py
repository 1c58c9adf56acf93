"""
Domain layer - Pure business logic without external dependencies.
"""

from .interval_calculus import AvailabilityCalculator
from .models import (
    AvailabilityException,
    Book,
    ExceptionKind,
    ManualBlock,
    MinuteRange,
    Reservation,
    ReservationStatus,
    WeeklyTemplate,
)

__all__ = [
    "AvailabilityCalculator",
    "AvailabilityException",
    "Book",
    "ExceptionKind",
    "ManualBlock",
    "MinuteRange",
    "Reservation",
    "ReservationStatus",
    "WeeklyTemplate",
]
