"""
Service layer helpers that orchestrate adapters and domain logic.
"""

from .admission import PaymentGate, ReservationAdmission
from .availability import AvailabilityService
from .booking_engine import BookingEngine, build_booking_engine
from .locks import SlotLockManager
from .store import SchedulingStore

__all__ = [
    "AvailabilityService",
    "BookingEngine",
    "PaymentGate",
    "ReservationAdmission",
    "SchedulingStore",
    "SlotLockManager",
    "build_booking_engine",
]
