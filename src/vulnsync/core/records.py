"""Canonical record types shared by analyzers, the engine and the store.

Every source maps its native payload into a VulnerabilityRecord so the
reconciler never has to know which API produced it. Notification events are
immutable values handed to an external delivery mechanism.

Provides:
- VulnerabilitySource: Enum of supported vulnerability data sources
- AnalyzerIdentity: Enum of analyzers, used for finding provenance
- Severity: Normalized severity labels
- CacheOutcome: Coarse result classification stored in the analysis cache
- VulnerabilityRecord: Source-independent vulnerability representation
- NotificationKind / NotificationLevel / NotificationEvent: Change events
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class VulnerabilitySource(str, Enum):
    """Origin of a vulnerability record (one per analyzer)."""

    NVD = "NVD"
    VULNDB = "VULNDB"
    NPM = "NPM"
    OSSINDEX = "OSSINDEX"


class AnalyzerIdentity(str, Enum):
    """Analyzer that attributed a vulnerability to a component."""

    NVD_ANALYZER = "NVD_ANALYZER"
    VULNDB_ANALYZER = "VULNDB_ANALYZER"
    NPM_AUDIT_ANALYZER = "NPM_AUDIT_ANALYZER"
    OSSINDEX_ANALYZER = "OSSINDEX_ANALYZER"


class Severity(str, Enum):
    """Normalized severity labels, ordered from most to least severe."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"
    UNASSIGNED = "unassigned"


class CacheOutcome(str, Enum):
    """Classification of the last completed analysis of an identity."""

    FINDINGS = "findings"
    NO_FINDINGS = "no_findings"
    NOT_APPLICABLE = "not_applicable"


class VulnerabilityRecord(BaseModel):
    """Source-independent vulnerability produced by an analyzer's normalize().

    Fields a source does not provide stay None (or empty for list fields).
    The reconciler treats those as omitted and keeps whatever the store
    already holds.

    Attributes:
        source: Source the record came from
        vuln_id: Identifier assigned by the source (unique within the source)
        title: Short title
        description: Long description
        recommendation: Remediation advice
        severity: Normalized severity label
        cvss_v2_score / cvss_v2_vector: CVSS v2 base score and vector
        cvss_v3_score / cvss_v3_vector: CVSS v3.x base score and vector
        cwes: CWE identifiers (e.g. "CWE-79")
        references: Reference URLs
        aliases: Identifiers of the same issue in other namespaces (e.g. CVE IDs)
        published / updated: Source timestamps
    """

    source: VulnerabilitySource
    vuln_id: str
    title: str | None = None
    description: str | None = None
    recommendation: str | None = None
    severity: Severity | None = None
    cvss_v2_score: float | None = None
    cvss_v2_vector: str | None = None
    cvss_v3_score: float | None = None
    cvss_v3_vector: str | None = None
    cwes: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
    published: datetime | None = None
    updated: datetime | None = None


class NotificationKind(str, Enum):
    """Kind of change a notification describes."""

    NEW_VULNERABILITY = "new_vulnerability"
    ANALYSIS_ERROR = "analysis_error"


class NotificationLevel(str, Enum):
    INFORMATIONAL = "informational"
    ERROR = "error"


class NotificationEvent(BaseModel):
    """Immutable description of a detected change.

    Built by the engine, consumed by external delivery channels. Subject
    fields are copied values so the event stays valid after the database
    session that produced it is closed.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    kind: NotificationKind
    level: NotificationLevel
    title: str
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: VulnerabilitySource | None = None
    analyzer: AnalyzerIdentity | None = None
    component_id: str | None = None
    component_name: str | None = None
    component_version: str | None = None
    vulnerability_id: str | None = None
    vuln_id: str | None = None
    severity: Severity | None = None
