"""Services package for fleetguard.

This package provides:
- The admission pipeline and its process-wide instance
- Observability sinks for admission events
- Worker utilization sources and polling
"""

from fleetguard.app.core.events import CollectingEventSink, EventSink, LoggingEventSink
from fleetguard.app.services.admission import (
    AdmissionController,
    AdmissionDecision,
    build_admission_controller,
    get_admission_controller,
    reset_admission_controller,
)
from fleetguard.app.services.utilization import (
    CpuUtilizationSource,
    StaticUtilizationSource,
    UtilizationPoller,
    UtilizationSource,
)

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "build_admission_controller",
    "get_admission_controller",
    "reset_admission_controller",
    "EventSink",
    "LoggingEventSink",
    "CollectingEventSink",
    "UtilizationSource",
    "StaticUtilizationSource",
    "CpuUtilizationSource",
    "UtilizationPoller",
]
