"""National Vulnerability Database analyzer (NVD CVE API 2.0).

Queries CVEs affecting a CPE. The API paginates with startIndex /
resultsPerPage and reports totalResults; an API key raises the rate limit
but is optional.

Provides:
- NvdAnalyzer: SourceAdapter for the NVD CVE API
"""

from datetime import datetime, timezone
from typing import Any

from vulnsync.core.persistence.models import Component
from vulnsync.core.records import AnalyzerIdentity, VulnerabilityRecord, VulnerabilitySource
from vulnsync.core.severity import resolve_severity

from .base import Credentials, MalformedRecordError, PageResult, PageStatus, error_page, fetch_json_page


DEFAULT_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # sources without an offset report UTC
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class NvdAnalyzer:
    """SourceAdapter for the NVD CVE API 2.0.

    Supports components with a CPE. Credentials are optional: the decrypted
    secret, when present, is sent as the apiKey header.
    """

    analyzer = AnalyzerIdentity.NVD_ANALYZER
    credentials_required = False

    def __init__(self, credentials: Credentials | None = None, base_url: str = DEFAULT_URL, timeout: int = 30):
        self.credentials = credentials or Credentials()
        self.base_url = base_url or DEFAULT_URL
        self.target_host = self.base_url
        self.timeout = timeout

    def identity(self) -> VulnerabilitySource:
        return VulnerabilitySource.NVD

    def supports(self, component: Component) -> bool:
        return bool(component.cpe)

    def query_key(self, component: Component) -> str | None:
        return component.cpe

    async def fetch_page(self, query_key: str, page_size: int, page_number: int) -> PageResult:
        """Fetch one page of CVEs for a CPE name.

        HTTP 404 means NVD does not know the CPE name; that is reported as
        NOT_APPLICABLE rather than as a failure.
        """
        params = {
            "cpeName": query_key,
            "resultsPerPage": page_size,
            "startIndex": (page_number - 1) * page_size,
        }
        headers = {"apiKey": self.credentials.secret} if self.credentials.secret else {}

        status, body, failed, duration = await fetch_json_page(
            "GET", self.base_url, self.timeout, page_number, params=params, headers=headers
        )
        if failed is not None:
            return failed

        if status == 404:
            return PageResult(status=PageStatus.NOT_APPLICABLE, page=page_number, total=0, duration_seconds=duration)
        if status != 200:
            return error_page(f"NVD returned HTTP {status}: {str(body)[:200]}", page_number, duration)
        if not isinstance(body, dict) or "vulnerabilities" not in body:
            return error_page(f"Unexpected NVD response: {str(body)[:200]}", page_number, duration)

        start_index = int(body.get("startIndex") or params["startIndex"])
        return PageResult(
            status=PageStatus.SUCCESS,
            results=list(body.get("vulnerabilities") or []),
            page=start_index // page_size + 1,
            total=int(body.get("totalResults") or 0),
            duration_seconds=duration,
        )

    def normalize(self, raw: dict[str, Any]) -> VulnerabilityRecord:
        """Map an NVD vulnerabilities[] item ({"cve": {...}})."""
        cve = raw.get("cve") if isinstance(raw, dict) else None
        if not isinstance(cve, dict) or not cve.get("id"):
            raise MalformedRecordError("NVD record has no cve.id")

        description = next(
            (d.get("value") for d in cve.get("descriptions", []) if d.get("lang") == "en"),
            None,
        )

        metrics = cve.get("metrics", {})
        v3 = self._primary_metric(metrics.get("cvssMetricV31") or metrics.get("cvssMetricV30") or [])
        v2 = self._primary_metric(metrics.get("cvssMetricV2") or [])
        v3_data = v3.get("cvssData", {}) if v3 else {}
        v2_data = v2.get("cvssData", {}) if v2 else {}

        cvss_v3_score = v3_data.get("baseScore")
        cvss_v2_score = v2_data.get("baseScore")

        cwes = []
        for weakness in cve.get("weaknesses", []):
            for desc in weakness.get("description", []):
                value = desc.get("value", "")
                if value.startswith("CWE-") and value not in cwes:
                    cwes.append(value)

        return VulnerabilityRecord(
            source=VulnerabilitySource.NVD,
            vuln_id=cve["id"],
            description=description,
            severity=resolve_severity(
                label=v3_data.get("baseSeverity") or (v2 or {}).get("baseSeverity"),
                cvss_v3_score=cvss_v3_score,
                cvss_v2_score=cvss_v2_score,
            ),
            cvss_v3_score=cvss_v3_score,
            cvss_v3_vector=v3_data.get("vectorString"),
            cvss_v2_score=cvss_v2_score,
            cvss_v2_vector=v2_data.get("vectorString"),
            cwes=cwes,
            references=[r["url"] for r in cve.get("references", []) if r.get("url")],
            published=_parse_timestamp(cve.get("published")),
            updated=_parse_timestamp(cve.get("lastModified")),
        )

    def _primary_metric(self, metrics: list[dict]) -> dict | None:
        """Prefer the NVD-authored ("Primary") metric over CNA ones."""
        if not metrics:
            return None
        return next((m for m in metrics if m.get("type") == "Primary"), metrics[0])
