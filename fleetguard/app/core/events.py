"""Observability sinks for admission events.

Limiters report fail-open events, rejections and shedding changes as
discrete AdmissionEvent records; delivery to logs or alerting is the
sink's concern.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional

from fleetguard.app.core.logging import get_log_context, get_logger
from fleetguard.app.models import AdmissionEvent, EventKind

logger = get_logger(__name__)


class EventSink(ABC):
    """Receives admission events."""

    @abstractmethod
    def emit(self, event: AdmissionEvent) -> None:
        """Report one event. Must not raise."""


class LoggingEventSink(EventSink):
    """Writes events to the fleetguard logger and counts them per kind.

    Store failures are warnings, rejections are info and shedding changes
    are debug, since the shedder reports on nearly every check while the
    worker is overloaded.
    """

    LEVELS = {
        EventKind.STORE_UNAVAILABLE: logging.WARNING,
        EventKind.REJECTED: logging.INFO,
        EventKind.SHEDDING_CHANGED: logging.DEBUG,
    }

    def __init__(self, log: Optional[logging.Logger] = None):
        self._logger = log or logger
        self._counts: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def emit(self, event: AdmissionEvent) -> None:
        with self._lock:
            self._counts[event.kind.value] += 1
        self._logger.log(
            self.LEVELS.get(event.kind, logging.INFO),
            f"Admission event {event.kind.value}: {event.reason}",
            extra=get_log_context(
                identity=event.identity,
                kind=event.kind.value,
                reason=event.reason,
            ),
        )

    def get_stats(self) -> Dict[str, int]:
        """Get event counts by kind."""
        with self._lock:
            return {kind.value: self._counts.get(kind.value, 0) for kind in EventKind}

    def reset_stats(self) -> None:
        """Reset event counters (useful for testing)."""
        with self._lock:
            self._counts.clear()


class CollectingEventSink(EventSink):
    """Keeps every event in memory."""

    def __init__(self):
        self.events: List[AdmissionEvent] = []

    def emit(self, event: AdmissionEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[AdmissionEvent]:
        return [e for e in self.events if e.kind is kind]

    def clear(self) -> None:
        self.events.clear()
