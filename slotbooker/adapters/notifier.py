"""
Notification dispatchers invoked after reservations are created or cancelled.

Delivery (e-mail, SMS, push, calendar sync) happens elsewhere; these adapters
only hand the event over. ``BackgroundNotifier`` keeps delivery off the
caller's thread so a slow or failing endpoint never delays an admission.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

import pendulum
import requests

from ..domain.exceptions import SchedulingError
from ..domain.models import Reservation, format_clock_time

logger = logging.getLogger(__name__)

RESERVATION_CREATED = "reservation.created"
RESERVATION_CANCELLED = "reservation.cancelled"
RESERVATION_CONFIRMED = "reservation.confirmed"


class NotificationError(SchedulingError):
    """Raised when a notification cannot be delivered."""


@dataclass(frozen=True)
class ReservationEvent:
    """Something happened to a reservation."""
    kind: str
    reservation: Reservation

    def to_payload(self) -> Dict[str, Any]:
        reservation = self.reservation
        return {
            "event": self.kind,
            "reservation": {
                "id": reservation.id,
                "bookId": reservation.book_id,
                "date": reservation.date.isoformat(),
                "startTime": format_clock_time(reservation.time_range.start),
                "endTime": format_clock_time(reservation.time_range.end),
                "status": reservation.status.value,
            },
            "sentAt": pendulum.now("UTC").to_iso8601_string(),
        }


class NotificationDispatcher(Protocol):
    """Protocol describing what the engine needs from a notifier."""

    def dispatch(self, event: ReservationEvent) -> None:
        """Hand the event over for delivery."""


class LoggingNotifier:
    """Writes events to the log. Default when nothing else is configured."""

    def dispatch(self, event: ReservationEvent) -> None:
        logger.info("%s: %s", event.kind, event.reservation.format_display())


class RecordingNotifier:
    """Keeps events in memory, handy for tests and dry runs."""

    def __init__(self) -> None:
        self.events: List[ReservationEvent] = []

    def dispatch(self, event: ReservationEvent) -> None:
        self.events.append(event)


class WebhookNotifier:
    """
    POSTs events as JSON to an HTTP endpoint.
    """

    def __init__(self, url: str, timeout_seconds: float = 10.0, session: requests.Session | None = None):
        """
        Initialize the webhook notifier.

        Args:
            url: Endpoint receiving the JSON payload
            timeout_seconds: Request timeout
            session: Optional requests session (connection reuse, tests)
        """
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.headers = {"Content-Type": "application/json"}

    def dispatch(self, event: ReservationEvent) -> None:
        """
        Deliver one event.

        Raises:
            NotificationError: If the endpoint is unreachable or answers with an error
        """
        try:
            response = self.session.post(
                self.url,
                headers=self.headers,
                json=event.to_payload(),
                timeout=self.timeout_seconds
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise NotificationError(f"Failed to deliver {event.kind} to {self.url}: {e}") from e


class BackgroundNotifier:
    """
    Fire-and-forget wrapper running another dispatcher on a thread pool.

    Failures are logged and never reach the caller.
    """

    def __init__(self, dispatcher: NotificationDispatcher, max_workers: int = 2):
        self.dispatcher = dispatcher
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def dispatch(self, event: ReservationEvent) -> Future:
        future = self._executor.submit(self.dispatcher.dispatch, event)
        future.add_done_callback(lambda done: self._log_failure(event, done))
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    @staticmethod
    def _log_failure(event: ReservationEvent, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("Notification %s for %s failed: %s", event.kind, event.reservation.id, exc)
