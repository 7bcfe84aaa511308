"""Create-or-merge reconciliation of normalized vulnerabilities.

Keeps exactly one stored record per (source, vuln_id) across repeated scans
and concurrent source runs, and links it to the component it was found on.

Provides:
- Reconciler: synchronize() for the record, reconcile() for record + link
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from vulnsync.core.persistence.models import Component, Vulnerability
from vulnsync.core.persistence.store import (
    get_vulnerability_by_source_and_id,
    insert_vulnerability,
    link_component_vulnerability,
    merge_vulnerability,
)
from vulnsync.core.records import AnalyzerIdentity, VulnerabilityRecord

from .notifications import NotificationTrigger

logger = structlog.get_logger()


class Reconciler:
    """Insert-or-merge on the (source, vuln_id) natural key.

    Args:
        trigger: Optional notification trigger, evaluated after the record is
            synchronized and before the component link is written
    """

    def __init__(self, trigger: NotificationTrigger | None = None):
        self.trigger = trigger
        self.created = 0
        self.merged = 0

    async def synchronize(self, session: AsyncSession, record: VulnerabilityRecord) -> Vulnerability:
        """Insert the record, or merge it into the existing one.

        The insert is guarded by the unique constraint; if a concurrent writer
        created the key in between, the incoming record is merged into that
        row instead.
        """
        existing = await get_vulnerability_by_source_and_id(session, record.source, record.vuln_id)

        if existing is None:
            vulnerability, created = await insert_vulnerability(session, record)
            if created:
                self.created += 1
                logger.debug(
                    "vulnerability_created",
                    source=record.source.value,
                    vuln_id=record.vuln_id,
                )
                return vulnerability
            existing = vulnerability

        if await merge_vulnerability(session, existing, record):
            self.merged += 1
            logger.debug(
                "vulnerability_merged",
                source=record.source.value,
                vuln_id=record.vuln_id,
            )
        return existing

    async def reconcile(
        self,
        session: AsyncSession,
        record: VulnerabilityRecord,
        component: Component,
        analyzer: AnalyzerIdentity,
    ) -> Vulnerability:
        """Synchronize the record and link it to the component.

        Re-linking an already linked pair is a no-op.

        Args:
            session: Database session (one transaction per page)
            record: Normalized vulnerability
            component: Component the vulnerability was found on
            analyzer: Analyzer that found it (link provenance)

        Returns:
            The canonical stored Vulnerability
        """
        vulnerability = await self.synchronize(session, record)

        if self.trigger is not None:
            await self.trigger.evaluate(session, vulnerability, component)

        await link_component_vulnerability(session, component.id, vulnerability.id, analyzer)
        return vulnerability
