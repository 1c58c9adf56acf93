"""
Domain-specific exception hierarchy for the booking engine.
"""

from typing import Optional

from .models import MinuteRange


class SchedulingError(Exception):
    """Base class for all application-level errors."""


class NotFoundError(SchedulingError):
    """Raised when a book, reservation, exception or block id is unknown."""


class ConflictError(SchedulingError):
    """Raised when a schedule edit collides with an existing record."""


class AdmissionError(SchedulingError):
    """Base class for reasons a reservation request is rejected."""


class InvalidRangeError(AdmissionError, ValueError):
    """Raised when requested time bounds are malformed or inverted."""


class BookClosedError(AdmissionError):
    """Raised when the book has no working hours on the requested date."""


class SlotNoLongerAvailableError(AdmissionError):
    """
    Raised when the requested slot is not free at admission time.

    Covers losing a race, a block or exception that appeared after the client
    fetched availability, lock contention and exhausted storage retries. The
    client may re-fetch availability and try again; ``alternative`` holds the
    earliest slot of the same length still open that day, if any.
    """

    def __init__(self, message: str, alternative: Optional[MinuteRange] = None):
        super().__init__(message)
        self.alternative = alternative


class InvalidTransitionError(SchedulingError):
    """Raised when a reservation cannot move to the requested status."""


class PaymentRequiredError(SchedulingError):
    """Raised when confirming a reservation whose payment is not settled."""


class StorageError(SchedulingError):
    """Raised when the persistence layer fails or aborts a transaction."""


class OverlapConstraintError(StorageError):
    """Raised by a store refusing to persist an overlapping active reservation."""


class LockTimeoutError(SchedulingError):
    """Raised when a (book, date) admission lock cannot be acquired in time."""


class DataIntegrityError(SchedulingError):
    """
    Raised when the store holds overlapping active reservations for one
    book and date. The no-overlap guarantee was bypassed; not recoverable.
    """
