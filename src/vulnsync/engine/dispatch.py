"""Dispatch gate and trigger consumer.

The gate is the only place that looks at a source's enable flag and
resolves its credentials; adapters receive already-decrypted credentials.
The consumer turns "analyze source X" messages into gate invocations: one
worker per source, messages for a source handled in arrival order, sources
running concurrently.

Provides:
- AnalysisTrigger: Inbound message naming a source and optional components
- DispatchGate: Enable/credential checks, then runs the orchestrator
- TriggerConsumer: Per-source asyncio queues with one worker each
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable
from uuid import uuid4

import structlog

from vulnsync.analyzers import ANALYZERS
from vulnsync.analyzers.base import Credentials, SourceAdapter
from vulnsync.core.config import Config, SourceSettings
from vulnsync.core.crypto import SecretDecryptionError, decrypt_secret
from vulnsync.core.persistence.database import get_session
from vulnsync.core.persistence.store import get_components
from vulnsync.core.records import VulnerabilitySource

from .freshness import FreshnessCache
from .notifications import LogNotificationSink, NotificationSink, NotificationTrigger
from .orchestrator import AnalysisOrchestrator, AnalysisSummary
from .throttle import Throttle

logger = structlog.get_logger()

AdapterFactory = Callable[..., SourceAdapter]


@dataclass(frozen=True)
class AnalysisTrigger:
    """Request to analyze a source.

    Attributes:
        source: Source to run
        component_ids: Explicit components (e.g. newly registered ones);
            empty means the full inventory
    """
    source: VulnerabilitySource
    component_ids: tuple[str, ...] = ()


class DispatchGate:
    """Entry point for a trigger naming a source.

    Args:
        config: Resolved application configuration
        sink: Destination for notification events
        factories: Adapter class per source (defaults to ANALYZERS)
    """

    def __init__(
        self,
        config: Config,
        sink: NotificationSink | None = None,
        factories: dict[VulnerabilitySource, AdapterFactory] | None = None,
    ):
        self.config = config
        self.sink = sink or LogNotificationSink()
        self.factories = factories or ANALYZERS
        self.cache = FreshnessCache({
            source: timedelta(hours=config.source(source).cache_validity_hours)
            for source in VulnerabilitySource
        })

    def resolve_credentials(
        self,
        source: VulnerabilitySource,
        settings: SourceSettings,
        required: bool,
    ) -> Credentials | None:
        """Decrypt the source's secret once for this run.

        Returns:
            Credentials, or None when the run must be skipped (required
            credentials missing, or the secret does not decrypt)
        """
        log = logger.bind(source=source.value)

        if required and not settings.api_key:
            log.warning("credentials_missing", reason="consumer key not specified, skipping")
            return None
        if required and not settings.api_secret:
            log.warning("credentials_missing", reason="consumer secret not specified, skipping")
            return None

        secret = ""
        if settings.api_secret:
            try:
                secret = decrypt_secret(settings.api_secret, self.config.secret_key)
            except SecretDecryptionError as e:
                log.error("credentials_decrypt_failed", error=str(e), reason="skipping")
                return None

        return Credentials(key=settings.api_key, secret=secret)

    async def dispatch(self, trigger: AnalysisTrigger) -> AnalysisSummary | None:
        """Run the orchestrator for the trigger's source if it may run.

        Returns:
            AnalysisSummary of the run, or None if the run was skipped
        """
        source = trigger.source
        settings = self.config.source(source)
        log = logger.bind(source=source.value)

        if not settings.enabled:
            log.debug("source_disabled")
            return None

        factory = self.factories.get(source)
        if factory is None:
            log.warning("source_without_analyzer")
            return None

        required = getattr(factory, "credentials_required", False)
        credentials = self.resolve_credentials(source, settings, required)
        if credentials is None:
            return None

        adapter = factory(credentials, base_url=settings.base_url, timeout=settings.timeout_seconds)

        orchestrator = AnalysisOrchestrator(
            adapter=adapter,
            cache=self.cache,
            trigger=NotificationTrigger(self.sink),
            page_size=settings.page_size,
            throttle=Throttle(settings.throttle_ms),
            run_id=str(uuid4()),
        )

        log.info("analysis_task_start", components=len(trigger.component_ids) or "all")
        if trigger.component_ids:
            async with get_session() as session:
                components = await get_components(session, trigger.component_ids)
            summary = await orchestrator.run(components)
        else:
            summary = await orchestrator.run()
        log.info("analysis_task_complete")
        return summary


class TriggerConsumer:
    """Explicit consumer for analysis triggers.

    One queue and one worker task per source, so a source's triggers run in
    arrival order while different sources proceed concurrently.

    Example:
        >>> consumer = TriggerConsumer(gate)
        >>> consumer.submit(AnalysisTrigger(VulnerabilitySource.NVD))
        >>> consumer.submit(AnalysisTrigger(VulnerabilitySource.NPM))
        >>> summaries = await consumer.join()
        >>> await consumer.stop()
    """

    def __init__(self, gate: DispatchGate):
        self.gate = gate
        self.queues: dict[VulnerabilitySource, asyncio.Queue[AnalysisTrigger]] = {}
        self.workers: dict[VulnerabilitySource, asyncio.Task] = {}
        self.summaries: list[AnalysisSummary] = []

    def submit(self, trigger: AnalysisTrigger) -> None:
        """Enqueue a trigger, starting the source's worker on first use."""
        queue = self.queues.get(trigger.source)
        if queue is None:
            queue = asyncio.Queue()
            self.queues[trigger.source] = queue
            self.workers[trigger.source] = asyncio.create_task(
                self._work(trigger.source, queue),
                name=f"vulnsync-{trigger.source.value.lower()}",
            )
        queue.put_nowait(trigger)

    async def _work(self, source: VulnerabilitySource, queue: asyncio.Queue) -> None:
        log = logger.bind(source=source.value)
        while True:
            trigger = await queue.get()
            try:
                summary = await self.gate.dispatch(trigger)
                if summary is not None:
                    self.summaries.append(summary)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception("dispatch_failed", error=str(e))
            finally:
                queue.task_done()

    async def join(self) -> list[AnalysisSummary]:
        """Wait until every submitted trigger has been handled."""
        await asyncio.gather(*(queue.join() for queue in self.queues.values()))
        return list(self.summaries)

    async def stop(self) -> None:
        """Cancel all workers."""
        for task in self.workers.values():
            task.cancel()
        await asyncio.gather(*self.workers.values(), return_exceptions=True)
        self.workers.clear()
        self.queues.clear()
