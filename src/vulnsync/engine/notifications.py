"""Notification trigger and sinks.

The trigger decides *that* and *what* to notify; delivery (chat, email,
webhook) belongs to whatever consumes the sink.

Provides:
- NotificationSink protocol
- QueueNotificationSink: asyncio.Queue backed sink for external consumers
- LogNotificationSink: structlog backed sink (used by the CLI)
- NotificationTrigger: Builds events for first-time component/vulnerability pairs
- analysis_error_event: Event describing a failed analysis of a component
"""

import asyncio
from typing import Protocol, runtime_checkable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from vulnsync.core.persistence.models import Component, Vulnerability
from vulnsync.core.persistence.store import has_link
from vulnsync.core.records import (
    AnalyzerIdentity,
    NotificationEvent,
    NotificationKind,
    NotificationLevel,
    Severity,
    VulnerabilitySource,
)

logger = structlog.get_logger()


@runtime_checkable
class NotificationSink(Protocol):
    """Destination for notification events."""

    async def publish(self, event: NotificationEvent) -> None:
        ...


class QueueNotificationSink:
    """Sink that puts events on an asyncio.Queue for an external consumer."""

    def __init__(self, queue: asyncio.Queue | None = None):
        self.queue: asyncio.Queue[NotificationEvent] = queue if queue is not None else asyncio.Queue()

    async def publish(self, event: NotificationEvent) -> None:
        await self.queue.put(event)

    def drain(self) -> list[NotificationEvent]:
        """Remove and return every event currently queued."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class LogNotificationSink:
    """Sink that writes events to the structured log."""

    async def publish(self, event: NotificationEvent) -> None:
        log = logger.bind(
            kind=event.kind.value,
            component=event.component_name,
            vuln_id=event.vuln_id,
            source=event.source.value if event.source else None,
        )
        if event.level == NotificationLevel.ERROR:
            log.error("notification", title=event.title, content=event.content)
        else:
            log.info("notification", title=event.title, content=event.content)


def _component_label(component: Component) -> str:
    return f"{component.name} {component.version}".strip() if component.version else component.name


def analysis_error_event(
    source: VulnerabilitySource,
    analyzer: AnalyzerIdentity,
    component: Component,
    error: str,
) -> NotificationEvent:
    return NotificationEvent(
        kind=NotificationKind.ANALYSIS_ERROR,
        level=NotificationLevel.ERROR,
        title="Analysis Error",
        content=f"{source.value} analysis of {_component_label(component)} failed: {error}",
        source=source,
        analyzer=analyzer,
        component_id=component.id,
        component_name=component.name,
        component_version=component.version,
    )


class NotificationTrigger:
    """Emits a NEW_VULNERABILITY event the first time a component is linked
    to a vulnerability.

    evaluate() must run before the link is written; it uses the link's
    existence as the trigger condition. Events are held in pending until
    flush() hands them to the sink, so callers can flush after their
    transaction commits.
    """

    def __init__(self, sink: NotificationSink):
        self.sink = sink
        self.pending: list[NotificationEvent] = []

    async def evaluate(
        self,
        session: AsyncSession,
        vulnerability: Vulnerability,
        component: Component,
    ) -> NotificationEvent | None:
        """Build an event if this component/vulnerability pair is new.

        Returns:
            The event (also queued in pending), or None for known pairs
        """
        if await has_link(session, component.id, vulnerability.id):
            return None

        event = NotificationEvent(
            kind=NotificationKind.NEW_VULNERABILITY,
            level=NotificationLevel.INFORMATIONAL,
            title="New Vulnerability Identified",
            content=f"{vulnerability.vuln_id} ({vulnerability.severity}) affects {_component_label(component)}",
            source=VulnerabilitySource(vulnerability.source),
            component_id=component.id,
            component_name=component.name,
            component_version=component.version,
            vulnerability_id=vulnerability.id,
            vuln_id=vulnerability.vuln_id,
            severity=Severity(vulnerability.severity),
        )
        self.pending.append(event)
        return event

    def discard(self) -> None:
        """Drop pending events (their transaction was rolled back)."""
        self.pending.clear()

    async def flush(self) -> int:
        """Publish pending events to the sink.

        Returns:
            Number of events published
        """
        events, self.pending = self.pending, []
        for event in events:
            await self.sink.publish(event)
        return len(events)
