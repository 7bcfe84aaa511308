"""AnalysisOrchestrator: the shared control loop for every source adapter.

Per component: skip internal/unsupported/fresh components, page through the
source with throttling, normalize and reconcile each record, then mark the
identity current in the freshness cache. Any failure is scoped to the
component; the batch always runs to the end.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Sequence
from uuid import uuid4

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from vulnsync.analyzers.base import MalformedRecordError, PageResult, PageStatus, SourceAdapter, error_page
from vulnsync.core.persistence.database import get_session
from vulnsync.core.persistence.models import Component
from vulnsync.core.persistence.store import list_components
from vulnsync.core.records import CacheOutcome, VulnerabilityRecord

from .freshness import FreshnessCache
from .notifications import NotificationTrigger, analysis_error_event
from .reconciler import Reconciler
from .throttle import Throttle

logger = structlog.get_logger()


@dataclass
class AnalysisSummary:
    """Counters for one orchestration run."""
    source: str
    analyzed: int = 0
    skipped: int = 0
    failed: int = 0
    pages: int = 0
    vulnerabilities: int = 0
    malformed: int = 0
    notifications: int = 0
    errors: list[str] = field(default_factory=list)


class AnalysisOrchestrator:
    """Drive one source adapter over a batch of components.

    Processing is sequential (components, then pages) so the throttle keeps
    consecutive requests to the source spaced.

    Args:
        adapter: Source adapter (already holding resolved credentials)
        cache: Freshness cache
        trigger: Notification trigger (events flushed after each page commits)
        page_size: Results requested per page
        throttle: Throttle for this run
        run_id: Optional identifier bound into every log line
    """

    def __init__(
        self,
        adapter: SourceAdapter,
        cache: FreshnessCache,
        trigger: NotificationTrigger,
        page_size: int = 100,
        throttle: Throttle | None = None,
        run_id: str | None = None,
    ):
        self.adapter = adapter
        self.source = adapter.identity()
        self.cache = cache
        self.trigger = trigger
        self.reconciler = Reconciler(trigger)
        self.page_size = page_size
        self.throttle = throttle or Throttle()
        self.run_id = run_id or str(uuid4())
        self.log = logger.bind(source=self.source.value, run_id=self.run_id)
        self._requests = 0

    async def run(self, components: Sequence[Component] | None = None) -> AnalysisSummary:
        """Analyze components, or the full inventory when none are given.

        Returns:
            AnalysisSummary with counters for the run
        """
        if components is None:
            async with get_session() as session:
                components = await list_components(session)

        summary = AnalysisSummary(source=self.source.value)
        self.log.info("analysis_start", components=len(components))

        for component in components:
            await self.analyze_component(component, summary)

        self.log.info(
            "analysis_complete",
            analyzed=summary.analyzed,
            skipped=summary.skipped,
            failed=summary.failed,
            vulnerabilities=summary.vulnerabilities,
            notifications=summary.notifications,
        )
        return summary

    async def should_analyze(self, component: Component) -> str | None:
        """Return the query key if the component needs analysis, else None.

        No network call is made for internal, unsupported or fresh components.
        """
        if component.internal:
            return None
        if not self.adapter.supports(component):
            return None

        query_key = self.adapter.query_key(component)
        if not query_key:
            return None

        if await self.cache.is_current(self.source, self.adapter.target_host, query_key):
            self.log.debug("analysis_cache_current", component_id=component.id, target=query_key)
            return None

        return query_key

    async def analyze_component(self, component: Component, summary: AnalysisSummary) -> bool:
        """Page through the source for one component.

        Returns:
            True if all pages were consumed and the cache was updated
        """
        query_key = await self.should_analyze(component)
        if query_key is None:
            summary.skipped += 1
            return False

        log = self.log.bind(component_id=component.id, target=query_key)
        vuln_ids: list[str] = []
        not_applicable = False
        fetched = 0
        page_number = 1

        while True:
            if self._requests > 0:
                await self.throttle.delay()
            self._requests += 1

            page = await self._fetch(query_key, page_number, log)
            summary.pages += 1

            if not page.successful:
                await self._record_failure(component, page, summary, log)
                return False

            if page.status == PageStatus.NOT_APPLICABLE:
                not_applicable = True
                break

            try:
                await self._process_page(page, component, vuln_ids, summary, log)
            except SQLAlchemyError as e:
                summary.failed += 1
                summary.errors.append(str(e))
                log.error("reconciliation_failed", page=page.page, error=str(e))
                return False
            fetched += len(page.results)

            more = (
                bool(page.results)
                and page.page * self.page_size < page.total
                and fetched < page.total
            )
            if not more:
                break
            page_number = page.page + 1

        if not_applicable:
            outcome = CacheOutcome.NOT_APPLICABLE
        elif vuln_ids:
            outcome = CacheOutcome.FINDINGS
        else:
            outcome = CacheOutcome.NO_FINDINGS

        await self.cache.update(self.source, self.adapter.target_host, query_key, outcome, vuln_ids)
        summary.analyzed += 1
        log.info("component_analyzed", outcome=outcome.value, vulnerabilities=len(vuln_ids))
        return True

    async def _process_page(
        self,
        page: PageResult,
        component: Component,
        vuln_ids: list[str],
        summary: AnalysisSummary,
        log,
    ) -> None:
        """Normalize and reconcile one page in a single transaction.

        Malformed records are skipped; the rest of the page still lands.
        Notification events are published only after the commit.
        """
        records = [r for r in (self._normalize(raw, summary, log) for raw in page.results) if r is not None]

        try:
            async with get_session() as session:
                for record in records:
                    vulnerability = await self.reconciler.reconcile(
                        session, record, component, self.adapter.analyzer
                    )
                    if vulnerability.vuln_id not in vuln_ids:
                        vuln_ids.append(vulnerability.vuln_id)
                    summary.vulnerabilities += 1
        except Exception:
            self.trigger.discard()
            raise

        summary.notifications += await self.trigger.flush()

    async def _fetch(self, query_key: str, page_number: int, log) -> PageResult:
        """Fetch one page; an adapter that raises yields a failed page."""
        try:
            return await self.adapter.fetch_page(query_key, self.page_size, page_number)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("adapter_fetch_raised", page=page_number)
            return error_page(f"Unexpected response: {type(e).__name__}: {e}", page_number)

    def _normalize(self, raw: dict[str, Any], summary: AnalysisSummary, log) -> VulnerabilityRecord | None:
        try:
            return self.adapter.normalize(raw)
        except (MalformedRecordError, ValidationError) as e:
            error = str(e)
        except Exception as e:
            # Unexpected shapes, e.g. a list where an object was expected
            error = f"{type(e).__name__}: {e}"
        summary.malformed += 1
        log.warning("malformed_record_skipped", error=error)
        return None

    async def _record_failure(self, component: Component, page: PageResult, summary: AnalysisSummary, log) -> None:
        """Log a failed page; the cache entry is left untouched (stays stale)."""
        summary.failed += 1
        summary.errors.append(page.error)
        log.error(
            "page_fetch_failed",
            page=page.page,
            status=page.status.value,
            error=page.error,
        )
        await self.trigger.sink.publish(
            analysis_error_event(self.source, self.adapter.analyzer, component, page.error)
        )
        summary.notifications += 1
