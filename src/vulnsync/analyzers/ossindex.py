"""Sonatype OSS Index analyzer (software-composition index).

Requests a component report for a package URL. Anonymous access works with
a low rate limit; a username and API token raise it and are sent as HTTP
basic auth when configured. Reports are not paginated.

Provides:
- OssIndexAnalyzer: SourceAdapter for OSS Index component-report
"""

from typing import Any
from urllib.parse import urljoin

import aiohttp
from packageurl import PackageURL

from vulnsync.core.persistence.models import Component
from vulnsync.core.records import AnalyzerIdentity, VulnerabilityRecord, VulnerabilitySource
from vulnsync.core.severity import resolve_severity, score_vector

from .base import Credentials, MalformedRecordError, PageResult, PageStatus, error_page, fetch_json_page


DEFAULT_URL = "https://ossindex.sonatype.org/"
COMPONENT_REPORT_PATH = "api/v3/component-report"


def _coordinates(purl: str | None) -> str | None:
    """Canonical OSS Index coordinates: the purl without qualifiers/subpath."""
    if not purl:
        return None
    try:
        parsed = PackageURL.from_string(purl)
    except ValueError:
        return None
    if not parsed.version:
        return None
    return PackageURL(
        type=parsed.type,
        namespace=parsed.namespace,
        name=parsed.name,
        version=parsed.version,
    ).to_string()


class OssIndexAnalyzer:
    """SourceAdapter for Sonatype OSS Index.

    Supports any versioned package URL.
    """

    analyzer = AnalyzerIdentity.OSSINDEX_ANALYZER
    credentials_required = False

    def __init__(self, credentials: Credentials | None = None, base_url: str = DEFAULT_URL, timeout: int = 30):
        self.credentials = credentials or Credentials()
        self.base_url = base_url or DEFAULT_URL
        self.target_host = self.base_url
        self.timeout = timeout

    def identity(self) -> VulnerabilitySource:
        return VulnerabilitySource.OSSINDEX

    def supports(self, component: Component) -> bool:
        return _coordinates(component.purl) is not None

    def query_key(self, component: Component) -> str | None:
        return _coordinates(component.purl)

    async def fetch_page(self, query_key: str, page_size: int, page_number: int) -> PageResult:
        """Fetch the component report for one coordinate (always a single page).

        The API answers with a JSON array of reports; a JSON object is an
        error payload, even with HTTP 200.
        """
        kwargs: dict[str, Any] = {"json": {"coordinates": [query_key]}}
        if self.credentials.complete:
            kwargs["auth"] = aiohttp.BasicAuth(self.credentials.key, self.credentials.secret)

        status, body, failed, duration = await fetch_json_page(
            "POST",
            urljoin(self.base_url, COMPONENT_REPORT_PATH),
            self.timeout,
            page_number,
            **kwargs,
        )
        if failed is not None:
            return failed

        if status != 200:
            return error_page(f"OSS Index returned HTTP {status}: {str(body)[:200]}", page_number, duration)
        if not isinstance(body, list):
            message = body.get("message") if isinstance(body, dict) else body
            return error_page(f"OSS Index error: {str(message)[:200]}", page_number, duration)

        vulnerabilities = []
        for report in body:
            if not isinstance(report, dict):
                continue
            vulnerabilities.extend(v for v in report.get("vulnerabilities") or [] if isinstance(v, dict))

        return PageResult(
            status=PageStatus.SUCCESS,
            results=vulnerabilities,
            page=1,
            total=len(vulnerabilities),
            duration_seconds=duration,
        )

    def normalize(self, raw: dict[str, Any]) -> VulnerabilityRecord:
        """Map one OSS Index vulnerability."""
        if not isinstance(raw, dict) or not raw.get("id"):
            raise MalformedRecordError("OSS Index vulnerability has no id")

        vector = raw.get("cvssVector") or None
        score = raw.get("cvssScore")
        if score is None and vector:
            score = score_vector(vector)[0]
        is_v3 = bool(vector and vector.startswith("CVSS:3"))
        # a bare score (no vector) is reported on the v3 scale
        v3_score = score if is_v3 or not vector else None
        v2_score = score if vector and not is_v3 else None

        references = [raw["reference"]] if raw.get("reference") else []
        for url in raw.get("externalReferences") or []:
            if url and url not in references:
                references.append(url)

        aliases = []
        if raw.get("cve"):
            aliases.append(raw["cve"])

        cwes = [raw["cwe"]] if raw.get("cwe") else []

        return VulnerabilityRecord(
            source=VulnerabilitySource.OSSINDEX,
            vuln_id=raw["id"],
            title=raw.get("title") or raw.get("displayName"),
            description=raw.get("description"),
            severity=resolve_severity(cvss_v3_score=v3_score, cvss_v2_score=v2_score),
            cvss_v3_score=v3_score,
            cvss_v3_vector=vector if is_v3 else None,
            cvss_v2_score=v2_score,
            cvss_v2_vector=vector if vector and not is_v3 else None,
            cwes=cwes,
            references=references,
            aliases=aliases,
        )
