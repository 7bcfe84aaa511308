"""Core vulnsync functionality.

Provides:
- Canonical records and enums shared across the project
- CVSS based severity normalization
"""

from .records import (
    AnalyzerIdentity,
    CacheOutcome,
    NotificationEvent,
    NotificationKind,
    NotificationLevel,
    Severity,
    VulnerabilityRecord,
    VulnerabilitySource,
)
from .severity import resolve_severity, score_vector, severity_from_score

__all__ = [
    "AnalyzerIdentity",
    "CacheOutcome",
    "NotificationEvent",
    "NotificationKind",
    "NotificationLevel",
    "Severity",
    "VulnerabilityRecord",
    "VulnerabilitySource",
    "resolve_severity",
    "score_vector",
    "severity_from_score",
]
