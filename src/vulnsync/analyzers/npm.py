"""npm audit analyzer (package-manager audit API).

Posts a package name and version to the npm registry's bulk advisory
endpoint and receives every advisory affecting that version. The endpoint
is not paginated, so one request yields the complete result.

Provides:
- NpmAuditAnalyzer: SourceAdapter for npm bulk advisories
"""

from typing import Any
from urllib.parse import urljoin

from packageurl import PackageURL

from vulnsync.core.persistence.models import Component
from vulnsync.core.records import AnalyzerIdentity, VulnerabilityRecord, VulnerabilitySource
from vulnsync.core.severity import resolve_severity, score_vector

from .base import Credentials, MalformedRecordError, PageResult, PageStatus, error_page, fetch_json_page


DEFAULT_URL = "https://registry.npmjs.org/"
BULK_ADVISORY_PATH = "-/npm/v1/security/advisories/bulk"


def parse_npm_purl(purl: str | None) -> tuple[str, str] | None:
    """Extract (package name, version) from an npm package URL.

    Scoped packages keep their scope: pkg:npm/%40babel/core@7.0.0 ->
    ("@babel/core", "7.0.0"). Returns None for non-npm or versionless purls.
    """
    if not purl:
        return None
    try:
        parsed = PackageURL.from_string(purl)
    except ValueError:
        return None
    if parsed.type != "npm" or not parsed.version:
        return None
    name = f"{parsed.namespace}/{parsed.name}" if parsed.namespace else parsed.name
    return name, parsed.version


class NpmAuditAnalyzer:
    """SourceAdapter for the npm registry bulk advisory endpoint.

    Supports versioned pkg:npm package URLs. No credentials needed.
    """

    analyzer = AnalyzerIdentity.NPM_AUDIT_ANALYZER
    credentials_required = False

    def __init__(self, credentials: Credentials | None = None, base_url: str = DEFAULT_URL, timeout: int = 30):
        self.credentials = credentials or Credentials()
        self.base_url = base_url or DEFAULT_URL
        self.target_host = self.base_url
        self.timeout = timeout

    def identity(self) -> VulnerabilitySource:
        return VulnerabilitySource.NPM

    def supports(self, component: Component) -> bool:
        return parse_npm_purl(component.purl) is not None

    def query_key(self, component: Component) -> str | None:
        return component.purl if self.supports(component) else None

    async def fetch_page(self, query_key: str, page_size: int, page_number: int) -> PageResult:
        """Fetch all advisories for one package version (always a single page)."""
        coordinates = parse_npm_purl(query_key)
        if coordinates is None:
            return error_page(f"Not an npm package URL: {query_key}", page_number)
        name, version = coordinates

        status, body, failed, duration = await fetch_json_page(
            "POST",
            urljoin(self.base_url, BULK_ADVISORY_PATH),
            self.timeout,
            page_number,
            json={name: [version]},
        )
        if failed is not None:
            return failed

        if isinstance(body, dict) and body.get("error"):
            return error_page(f"npm audit error: {body['error']}", page_number, duration)
        if status != 200:
            return error_page(f"npm audit returned HTTP {status}: {str(body)[:200]}", page_number, duration)
        if not isinstance(body, dict):
            return error_page(f"Unexpected npm audit response: {str(body)[:200]}", page_number, duration)

        advisories = list(body.get(name) or [])
        return PageResult(
            status=PageStatus.SUCCESS,
            results=advisories,
            page=1,
            total=len(advisories),
            duration_seconds=duration,
        )

    def normalize(self, raw: dict[str, Any]) -> VulnerabilityRecord:
        """Map one npm advisory."""
        if not isinstance(raw, dict) or raw.get("id") is None:
            raise MalformedRecordError("npm advisory has no id")

        cvss = raw.get("cvss") or {}
        vector = cvss.get("vectorString") or None
        score = cvss.get("score")
        if score is None and vector:
            score = score_vector(vector)[0]
        if score == 0 and not vector:
            score = None

        is_v3 = bool(vector and vector.startswith("CVSS:3"))

        aliases = list(raw.get("cves") or [])
        advisory_url = raw.get("url")
        if advisory_url and "/advisories/GHSA-" in advisory_url:
            ghsa = advisory_url.rsplit("/", 1)[-1]
            if ghsa not in aliases:
                aliases.append(ghsa)

        cwes = raw.get("cwe") or []
        if isinstance(cwes, str):
            cwes = [cwes]

        return VulnerabilityRecord(
            source=VulnerabilitySource.NPM,
            vuln_id=str(raw["id"]),
            title=raw.get("title"),
            description=raw.get("overview"),
            recommendation=raw.get("recommendation"),
            severity=resolve_severity(
                label=raw.get("severity"),
                cvss_v3_score=score if is_v3 else None,
                cvss_v2_score=score if vector and not is_v3 else None,
            ),
            cvss_v3_score=score if is_v3 else None,
            cvss_v3_vector=vector if is_v3 else None,
            cvss_v2_score=score if vector and not is_v3 else None,
            cvss_v2_vector=vector if vector and not is_v3 else None,
            cwes=list(cwes),
            references=[advisory_url] if advisory_url else [],
            aliases=aliases,
        )
