"""Freshness cache deciding whether an identity needs re-analysis.

The staleness check and the post-run update are two separate, short
transactions. Losing an update only costs a redundant re-scan.

Provides:
- FreshnessCache: is_current / update per (source, target host, identity)
"""

from datetime import datetime, timedelta, timezone

import structlog

from vulnsync.core.persistence.database import get_session
from vulnsync.core.persistence.store import get_cache_entry, upsert_cache_entry
from vulnsync.core.records import CacheOutcome, VulnerabilitySource

logger = structlog.get_logger()


class FreshnessCache:
    """Analysis cache with one validity window per source.

    Example:
        >>> cache = FreshnessCache({VulnerabilitySource.NVD: timedelta(hours=12)})
        >>> if not await cache.is_current(VulnerabilitySource.NVD, host, cpe):
        ...     ...  # analyze, then
        ...     await cache.update(VulnerabilitySource.NVD, host, cpe, CacheOutcome.NO_FINDINGS)
    """

    def __init__(
        self,
        validity: dict[VulnerabilitySource, timedelta] | None = None,
        default_validity: timedelta = timedelta(hours=12),
    ):
        self.validity = validity or {}
        self.default_validity = default_validity

    def window(self, source: VulnerabilitySource) -> timedelta:
        return self.validity.get(source, self.default_validity)

    async def is_current(self, source: VulnerabilitySource, target_host: str, target: str) -> bool:
        """True if the identity was analyzed within the source's validity window."""
        async with get_session() as session:
            entry = await get_cache_entry(session, source, target_host, target)

        if entry is None:
            return False

        last = entry.last_occurrence
        # SQLite returns naive datetimes; they are stored as UTC
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)

        return datetime.now(timezone.utc) - last < self.window(source)

    async def update(
        self,
        source: VulnerabilitySource,
        target_host: str,
        target: str,
        outcome: CacheOutcome,
        vuln_ids: list[str] | None = None,
    ) -> None:
        """Overwrite (or create) the entry with the current time and outcome."""
        async with get_session() as session:
            await upsert_cache_entry(
                session,
                source,
                target_host,
                target,
                outcome=outcome.value,
                result={"vulnIds": list(vuln_ids or [])},
            )
        logger.debug(
            "analysis_cache_updated",
            source=source.value,
            target=target,
            outcome=outcome.value,
        )
