"""Store operations used by the analysis engine.

Every write that is keyed by a natural key (vulnerability source + ID,
component + vulnerability link, analysis cache key) goes through a
dialect-level INSERT ... ON CONFLICT so concurrent writers for the same key
can never produce duplicate rows.

Provides:
- list_components / get_components / add_component: Inventory access
- get_vulnerability_by_source_and_id: Natural key lookup
- insert_vulnerability: Constraint-guarded insert of a new record
- merge_vulnerability: Field-by-field merge of an incoming record
- has_link / link_component_vulnerability: Component link management
- list_vulnerabilities: Vulnerabilities, optionally for one component
- get_cache_entry / upsert_cache_entry: Analysis cache rows
"""

import json
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from vulnsync.core.records import AnalyzerIdentity, Severity, VulnerabilityRecord, VulnerabilitySource

from .models import AnalysisCache, Component, ComponentVulnerability, Vulnerability


# Text fields overwritten by a non-empty incoming value
TEXT_FIELDS = ("title", "description", "recommendation")

# Scalar fields overwritten by any non-None incoming value
SCALAR_FIELDS = (
    "cvss_v2_score",
    "cvss_v2_vector",
    "cvss_v3_score",
    "cvss_v3_vector",
    "published",
    "updated",
)

# JSON array fields merged as an ordered union
LIST_FIELDS = ("cwes", "references", "aliases")


def _insert_for(session: AsyncSession):
    """Return the dialect insert() construct that supports ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")


def _union(existing: list[str], incoming: Iterable[str]) -> list[str]:
    merged = list(existing)
    for item in incoming:
        if item and item not in merged:
            merged.append(item)
    return merged


# Components

async def list_components(session: AsyncSession) -> list[Component]:
    """Full component inventory, oldest first."""
    result = await session.execute(select(Component).order_by(Component.created_at, Component.id))
    return list(result.scalars().all())


async def get_components(session: AsyncSession, component_ids: Iterable[str]) -> list[Component]:
    """Components for the given IDs, in the order the IDs were given.

    Unknown IDs are ignored.
    """
    ids = list(component_ids)
    if not ids:
        return []
    result = await session.execute(select(Component).where(Component.id.in_(ids)))
    by_id = {component.id: component for component in result.scalars().all()}
    return [by_id[cid] for cid in ids if cid in by_id]


async def add_component(
    session: AsyncSession,
    name: str,
    version: str | None = None,
    group: str | None = None,
    purl: str | None = None,
    cpe: str | None = None,
    internal: bool = False,
) -> Component:
    """Register a component in the inventory.

    Example:
        >>> async with get_session() as session:
        ...     component = await add_component(
        ...         session, "lodash", "4.17.20", purl="pkg:npm/lodash@4.17.20"
        ...     )
    """
    component = Component(
        name=name,
        version=version,
        group=group,
        purl=purl,
        cpe=cpe,
        internal=internal,
    )
    session.add(component)
    await session.flush()
    return component


# Vulnerabilities

async def get_vulnerability_by_source_and_id(
    session: AsyncSession,
    source: VulnerabilitySource | str,
    vuln_id: str,
) -> Optional[Vulnerability]:
    """Look up a vulnerability by its natural key."""
    source_value = source.value if isinstance(source, VulnerabilitySource) else source
    result = await session.execute(
        select(Vulnerability).where(
            Vulnerability.source == source_value,
            Vulnerability.vuln_id == vuln_id,
        )
    )
    return result.scalar_one_or_none()


def _record_values(record: VulnerabilityRecord) -> dict[str, Any]:
    return {
        "source": record.source.value,
        "vuln_id": record.vuln_id,
        "title": record.title or None,
        "description": record.description or None,
        "recommendation": record.recommendation or None,
        "severity": (record.severity or Severity.UNASSIGNED).value,
        "cvss_v2_score": record.cvss_v2_score,
        "cvss_v2_vector": record.cvss_v2_vector,
        "cvss_v3_score": record.cvss_v3_score,
        "cvss_v3_vector": record.cvss_v3_vector,
        "cwes": json.dumps(_union([], record.cwes)),
        "references": json.dumps(_union([], record.references)),
        "aliases": json.dumps(_union([], record.aliases)),
        "published": record.published,
        "updated": record.updated,
    }


async def insert_vulnerability(
    session: AsyncSession,
    record: VulnerabilityRecord,
) -> tuple[Vulnerability, bool]:
    """Insert a new vulnerability unless one with the same key already exists.

    Uses INSERT ... ON CONFLICT DO NOTHING on (source, vuln_id), then reads
    the row back. If another writer inserted the key first, that row is
    returned instead.

    Args:
        session: Database session
        record: Normalized vulnerability

    Returns:
        Tuple of (stored vulnerability, True if this call created it)
    """
    new_id = str(uuid4())
    values = _record_values(record)
    values["id"] = new_id
    values["created_at"] = datetime.now(timezone.utc)

    insert = _insert_for(session)
    stmt = insert(Vulnerability).values(**values).on_conflict_do_nothing(
        index_elements=["source", "vuln_id"]
    )
    await session.execute(stmt)

    stored = await get_vulnerability_by_source_and_id(session, record.source, record.vuln_id)
    if stored is None:
        raise RuntimeError(
            f"Vulnerability {record.source.value}/{record.vuln_id} missing after insert"
        )
    return stored, stored.id == new_id


async def merge_vulnerability(
    session: AsyncSession,
    existing: Vulnerability,
    record: VulnerabilityRecord,
) -> bool:
    """Merge mutable fields of an incoming record into a stored one.

    Merge table:
    - id, source, vuln_id, created_at: never changed
    - title, description, recommendation: overwritten when incoming is non-empty
    - severity: overwritten unless incoming is None or UNASSIGNED
    - CVSS scores/vectors, published, updated: overwritten when incoming is not None
    - cwes, references, aliases: ordered union, nothing removed
    - modified_at: set when anything changed

    Args:
        session: Database session
        existing: Stored vulnerability (same source and vuln_id as record)
        record: Incoming normalized vulnerability

    Returns:
        True if any field changed
    """
    changed = False

    for name in TEXT_FIELDS:
        incoming = getattr(record, name)
        if incoming and getattr(existing, name) != incoming:
            setattr(existing, name, incoming)
            changed = True

    if record.severity is not None and record.severity != Severity.UNASSIGNED:
        if existing.severity != record.severity.value:
            existing.severity = record.severity.value
            changed = True

    for name in SCALAR_FIELDS:
        incoming = getattr(record, name)
        if incoming is None:
            continue
        current = getattr(existing, name)
        if isinstance(incoming, datetime) and isinstance(current, datetime):
            # SQLite hands back naive datetimes; compare in UTC
            if current.tzinfo is None:
                current = current.replace(tzinfo=timezone.utc)
            if incoming.tzinfo is None:
                incoming = incoming.replace(tzinfo=timezone.utc)
        if current != incoming:
            setattr(existing, name, getattr(record, name))
            changed = True

    for name in LIST_FIELDS:
        current = existing.list_field(name)
        merged = _union(current, getattr(record, name))
        if merged != current:
            setattr(existing, name, json.dumps(merged))
            changed = True

    if changed:
        existing.modified_at = datetime.now(timezone.utc)
        await session.flush()

    return changed


async def list_vulnerabilities(
    session: AsyncSession,
    component_id: str | None = None,
) -> list[Vulnerability]:
    """All stored vulnerabilities, or those linked to one component."""
    stmt = select(Vulnerability)
    if component_id is not None:
        stmt = stmt.join(
            ComponentVulnerability,
            ComponentVulnerability.vulnerability_id == Vulnerability.id,
        ).where(ComponentVulnerability.component_id == component_id)
    stmt = stmt.order_by(Vulnerability.source, Vulnerability.vuln_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# Links

async def has_link(session: AsyncSession, component_id: str, vulnerability_id: str) -> bool:
    """Whether the component is already linked to the vulnerability."""
    result = await session.execute(
        select(ComponentVulnerability.id).where(
            ComponentVulnerability.component_id == component_id,
            ComponentVulnerability.vulnerability_id == vulnerability_id,
        )
    )
    return result.first() is not None


async def link_component_vulnerability(
    session: AsyncSession,
    component_id: str,
    vulnerability_id: str,
    analyzer: AnalyzerIdentity,
) -> bool:
    """Link a vulnerability to a component; re-linking is a no-op.

    Returns:
        True if a new link row was created
    """
    new_id = str(uuid4())
    insert = _insert_for(session)
    stmt = insert(ComponentVulnerability).values(
        id=new_id,
        component_id=component_id,
        vulnerability_id=vulnerability_id,
        analyzer_identity=analyzer.value,
        attributed_on=datetime.now(timezone.utc),
    ).on_conflict_do_nothing(index_elements=["component_id", "vulnerability_id"])
    await session.execute(stmt)

    result = await session.execute(
        select(ComponentVulnerability.id).where(
            ComponentVulnerability.component_id == component_id,
            ComponentVulnerability.vulnerability_id == vulnerability_id,
        )
    )
    return result.scalar_one() == new_id


# Analysis cache

async def get_cache_entry(
    session: AsyncSession,
    source: VulnerabilitySource,
    target_host: str,
    target: str,
) -> Optional[AnalysisCache]:
    result = await session.execute(
        select(AnalysisCache).where(
            AnalysisCache.source == source.value,
            AnalysisCache.target_host == target_host,
            AnalysisCache.target == target,
        )
    )
    return result.scalar_one_or_none()


async def upsert_cache_entry(
    session: AsyncSession,
    source: VulnerabilitySource,
    target_host: str,
    target: str,
    outcome: str,
    result: dict[str, Any] | None = None,
    when: datetime | None = None,
) -> None:
    """Insert or overwrite the cache entry for (source, target_host, target)."""
    when = when or datetime.now(timezone.utc)
    payload = json.dumps(result, sort_keys=True) if result is not None else None

    insert = _insert_for(session)
    stmt = insert(AnalysisCache).values(
        source=source.value,
        target_host=target_host,
        target=target,
        last_occurrence=when,
        outcome=outcome,
        result=payload,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["source", "target_host", "target"],
        set_={
            "last_occurrence": stmt.excluded.last_occurrence,
            "outcome": stmt.excluded.outcome,
            "result": stmt.excluded.result,
        },
    )
    await session.execute(stmt)
