"""Shared fixtures: in-memory database and a scripted source adapter."""

import pytest

from vulnsync.analyzers.base import MalformedRecordError, PageResult, PageStatus
from vulnsync.core.persistence.database import init_database, create_session_factory, get_session
from vulnsync.core.persistence.store import add_component
from vulnsync.core.records import AnalyzerIdentity, Severity, VulnerabilityRecord, VulnerabilitySource


class FakeAdapter:
    """Adapter serving canned records per CPE, paged like a real source.

    Args:
        records: Raw records per query key; each raw record is
            {"id": ..., "title": ..., "severity": ...}
        failing: Query key -> page number that fails with an error page
        not_applicable: Query keys the source does not know
        raising: Query keys whose fetch raises instead of returning a page
    """

    analyzer = AnalyzerIdentity.NVD_ANALYZER
    target_host = "https://nvd.example/"
    credentials_required = False

    def __init__(self, records=None, failing=None, not_applicable=(), raising=()):
        self.records = records or {}
        self.failing = failing or {}
        self.not_applicable = set(not_applicable)
        self.raising = set(raising)
        self.calls = []

    def identity(self):
        return VulnerabilitySource.NVD

    def supports(self, component):
        return bool(component.cpe)

    def query_key(self, component):
        return component.cpe

    async def fetch_page(self, query_key, page_size, page_number):
        self.calls.append((query_key, page_number))
        if query_key in self.raising:
            raise TypeError("int() argument must be a string, a bytes-like object or a real number, not 'NoneType'")
        if self.failing.get(query_key) == page_number:
            return PageResult(status=PageStatus.ERROR, page=page_number, error="HTTP 503: Service Unavailable")
        if query_key in self.not_applicable:
            return PageResult(status=PageStatus.NOT_APPLICABLE, page=page_number)

        records = self.records.get(query_key, [])
        start = (page_number - 1) * page_size
        return PageResult(
            status=PageStatus.SUCCESS,
            results=records[start:start + page_size],
            page=page_number,
            total=len(records),
        )

    def normalize(self, raw):
        if "id" not in raw:
            raise MalformedRecordError("record has no id")
        return VulnerabilityRecord(
            source=VulnerabilitySource.NVD,
            vuln_id=raw["id"],
            title=raw.get("title"),
            severity=Severity(raw.get("severity", "unassigned")),
            references=raw.get("references", []),
        )


def cve_records(count, prefix="CVE-2024-"):
    return [{"id": f"{prefix}{n:05d}", "title": f"Issue {n}", "severity": "high"} for n in range(count)]


@pytest.fixture
async def db_engine():
    """Fresh in-memory database for each test."""
    engine = await init_database("sqlite+aiosqlite:///:memory:")
    create_session_factory(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def make_component(db_engine):
    """Create a component and return it (detached, attributes loaded)."""
    async def _make(name="openssl", version="1.1.1", **kwargs):
        async with get_session() as session:
            return await add_component(session, name, version, **kwargs)
    return _make
