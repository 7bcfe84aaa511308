"""SQLAlchemy ORM models for the async persistence layer.

Models:
- Component: Software artifacts under analysis
- Vulnerability: Canonical vulnerability records, unique per (source, vuln_id)
- ComponentVulnerability: Component/vulnerability links with provenance
- AnalysisCache: Last completed analysis per (source, target host, identity)
"""

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Component(Base):
    """Software component under analysis.

    Identity is immutable; metadata is owned by inventory management.
    Internal components are never sent to external sources.
    """
    __tablename__ = "components"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    group: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    purl: Mapped[Optional[str]] = mapped_column(String(1024), index=True, nullable=True)
    cpe: Mapped[Optional[str]] = mapped_column(String(1024), index=True, nullable=True)
    internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Vulnerability(Base):
    """Canonical vulnerability record.

    (source, vuln_id) is the natural key the reconciler merges on; the unique
    constraint makes concurrent inserts of the same key collapse into one row.

    Attributes:
        id: Internal identity (never changes on merge)
        source: VulnerabilitySource value
        vuln_id: Source-native identifier
        cwes / references / aliases: JSON arrays
    """
    __tablename__ = "vulnerabilities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    vuln_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recommendation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="unassigned")
    cvss_v2_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cvss_v2_vector: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cvss_v3_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cvss_v3_vector: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cwes: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON array
    references: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON array
    aliases: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON array
    published: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "vuln_id", name="uq_vulnerability_source_vuln_id"),
    )

    def list_field(self, name: str) -> list[str]:
        """Decode one of the JSON array columns (cwes, references, aliases)."""
        return json.loads(getattr(self, name) or "[]")


class ComponentVulnerability(Base):
    """Link recording that an analyzer found a vulnerability on a component.

    One row per (component, vulnerability); analyzer_identity keeps the
    provenance of the analyzer that attributed it first.
    """
    __tablename__ = "component_vulnerabilities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    component_id: Mapped[str] = mapped_column(String(36), ForeignKey("components.id"), nullable=False)
    vulnerability_id: Mapped[str] = mapped_column(String(36), ForeignKey("vulnerabilities.id"), nullable=False)
    analyzer_identity: Mapped[str] = mapped_column(String(50), nullable=False)
    attributed_on: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("component_id", "vulnerability_id", name="uq_component_vulnerability"),
        Index("ix_component_vulnerability_vuln", "vulnerability_id"),
    )


class AnalysisCache(Base):
    """Last completed analysis of an identity against a source.

    Only used to decide staleness; result holds the vulnerability IDs found
    in that run for diagnostics.
    """
    __tablename__ = "analysis_cache"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    target_host: Mapped[str] = mapped_column(String(1024), nullable=False)
    target: Mapped[str] = mapped_column(String(1024), nullable=False)
    last_occurrence: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON {"vulnIds": [...]}

    __table_args__ = (
        UniqueConstraint("source", "target_host", "target", name="uq_analysis_cache_key"),
    )
