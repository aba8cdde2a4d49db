"""Core configuration and scheduling primitives."""

from .config import Settings, StoragePolicy
from .scheduling import CancellationToken, Clock, DeadlineExceeded, MonotonicClock, race_deadline

__all__ = [
    "Settings",
    "StoragePolicy",
    "CancellationToken",
    "Clock",
    "DeadlineExceeded",
    "MonotonicClock",
    "race_deadline",
]
