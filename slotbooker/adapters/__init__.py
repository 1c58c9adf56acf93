"""
Adapters layer - Persistence, clock and notification integrations.
"""

from .clock import FixedClock, SystemClock
from .memory_store import InMemoryStore
from .notifier import BackgroundNotifier, LoggingNotifier, RecordingNotifier, WebhookNotifier
from .sql_store import SqlStore

__all__ = [
    "BackgroundNotifier",
    "FixedClock",
    "InMemoryStore",
    "LoggingNotifier",
    "RecordingNotifier",
    "SqlStore",
    "SystemClock",
    "WebhookNotifier",
]
