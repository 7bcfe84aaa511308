"""Analysis and reconciliation engine.

Provides:
- Throttle for per-run request spacing
- FreshnessCache for skipping recently analyzed identities
- Reconciler for insert-or-merge of vulnerabilities and component links
- NotificationTrigger and sinks for new-finding events
- AnalysisOrchestrator, the shared per-source control loop
- DispatchGate and TriggerConsumer, the event-driven entry point
"""

from .throttle import Throttle
from .freshness import FreshnessCache
from .reconciler import Reconciler
from .notifications import (
    LogNotificationSink,
    NotificationSink,
    NotificationTrigger,
    QueueNotificationSink,
)
from .orchestrator import AnalysisOrchestrator, AnalysisSummary
from .dispatch import AnalysisTrigger, DispatchGate, TriggerConsumer

__all__ = [
    "Throttle",
    "FreshnessCache",
    "Reconciler",
    "LogNotificationSink",
    "NotificationSink",
    "NotificationTrigger",
    "QueueNotificationSink",
    "AnalysisOrchestrator",
    "AnalysisSummary",
    "AnalysisTrigger",
    "DispatchGate",
    "TriggerConsumer",
]
