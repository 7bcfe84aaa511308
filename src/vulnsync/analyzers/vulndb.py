"""VulnDB analyzer (commercial vulnerability feed).

Looks up vulnerabilities by CPE through the VulnDB REST API. Requests are
signed with OAuth 1.0a (HMAC-SHA1) using the consumer key and the decrypted
consumer secret the dispatch gate resolved for this run.

Provides:
- VulnDbAnalyzer: SourceAdapter for VulnDB find_by_cpe
"""

from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode, urljoin

from oauthlib.oauth1 import SIGNATURE_HMAC_SHA1, Client

from vulnsync.core.persistence.models import Component
from vulnsync.core.records import AnalyzerIdentity, VulnerabilityRecord, VulnerabilitySource
from vulnsync.core.severity import resolve_severity, score_vector

from .base import Credentials, MalformedRecordError, PageResult, PageStatus, error_page, fetch_json_page


DEFAULT_URL = "https://vulndb.cyberriskanalytics.com/"
FIND_BY_CPE_PATH = "api/v1/vulnerabilities/find_by_cpe"

CVSS_V2_METRICS = (
    ("AV", "access_vector"),
    ("AC", "access_complexity"),
    ("Au", "authentication"),
    ("C", "confidentiality_impact"),
    ("I", "integrity_impact"),
    ("A", "availability_impact"),
)

CVSS_V3_METRICS = (
    ("AV", "attack_vector"),
    ("AC", "attack_complexity"),
    ("PR", "privileges_required"),
    ("UI", "user_interaction"),
    ("S", "scope"),
    ("C", "confidentiality_impact"),
    ("I", "integrity_impact"),
    ("A", "availability_impact"),
)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # sources without an offset report UTC
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _build_vector(metric: dict, metrics: tuple[tuple[str, str], ...], prefix: str = "") -> str | None:
    """Rebuild a CVSS vector from VulnDB's spelled-out metric values.

    VulnDB sends e.g. {"access_vector": "NETWORK"}; the first letter of every
    value is the CVSS abbreviation (NETWORK -> N, ADJACENT_NETWORK -> A,
    SINGLE_INSTANCE -> S, UNCHANGED -> U).
    """
    parts = [prefix] if prefix else []
    for code, name in metrics:
        value = metric.get(name)
        if not value:
            return None
        parts.append(f"{code}:{str(value)[0].upper()}")
    return "/".join(parts)


class VulnDbAnalyzer:
    """SourceAdapter for VulnDB.

    Supports components with a CPE. Requires both OAuth consumer key and
    secret; the dispatch gate skips the run when they are missing.
    """

    analyzer = AnalyzerIdentity.VULNDB_ANALYZER
    credentials_required = True

    def __init__(self, credentials: Credentials, base_url: str = DEFAULT_URL, timeout: int = 30):
        self.credentials = credentials
        self.base_url = base_url or DEFAULT_URL
        self.target_host = self.base_url
        self.timeout = timeout
        self.oauth = Client(
            credentials.key,
            client_secret=credentials.secret,
            signature_method=SIGNATURE_HMAC_SHA1,
        )

    def identity(self) -> VulnerabilitySource:
        return VulnerabilitySource.VULNDB

    def supports(self, component: Component) -> bool:
        return bool(component.cpe)

    def query_key(self, component: Component) -> str | None:
        return component.cpe

    def _signed_request(self, query_key: str, page_size: int, page_number: int) -> tuple[str, dict]:
        query = urlencode({"cpe": query_key, "size": page_size, "page": page_number, "nested": "true"})
        url = f"{urljoin(self.base_url, FIND_BY_CPE_PATH)}?{query}"
        signed_url, headers, _ = self.oauth.sign(url, http_method="GET")
        headers["Accept"] = "application/json"
        return signed_url, headers

    async def fetch_page(self, query_key: str, page_size: int, page_number: int) -> PageResult:
        """Fetch one page of find_by_cpe results.

        VulnDB can answer HTTP 200 with {"error": "..."}; that is a failed
        page, not an empty one.
        """
        url, headers = self._signed_request(query_key, page_size, page_number)

        status, body, failed, duration = await fetch_json_page(
            "GET", url, self.timeout, page_number, headers=headers
        )
        if failed is not None:
            return failed

        if isinstance(body, dict) and body.get("error"):
            return error_page(f"VulnDB error: {body['error']}", page_number, duration)
        if status != 200:
            return error_page(f"VulnDB returned HTTP {status}: {str(body)[:200]}", page_number, duration)
        if not isinstance(body, dict) or "results" not in body:
            return error_page(f"Unexpected VulnDB response: {str(body)[:200]}", page_number, duration)

        return PageResult(
            status=PageStatus.SUCCESS,
            results=list(body.get("results") or []),
            page=int(body.get("current_page") or page_number),
            total=int(body.get("total_entries") or 0),
            duration_seconds=duration,
        )

    def normalize(self, raw: dict[str, Any]) -> VulnerabilityRecord:
        """Map a VulnDB vulnerability object."""
        if not isinstance(raw, dict) or raw.get("vulndb_id") is None:
            raise MalformedRecordError("VulnDB record has no vulndb_id")

        v2_metric = (raw.get("cvss_metrics") or [None])[-1] or {}
        v3_metric = (raw.get("cvss_version_three_metrics") or [None])[-1] or {}

        cvss_v2_vector = _build_vector(v2_metric, CVSS_V2_METRICS) if v2_metric else None
        cvss_v3_vector = _build_vector(v3_metric, CVSS_V3_METRICS, prefix="CVSS:3.1") if v3_metric else None
        cvss_v2_score = self._score(v2_metric, cvss_v2_vector)
        cvss_v3_score = self._score(v3_metric, cvss_v3_vector)

        references = []
        aliases = []
        for ref in raw.get("ext_references") or []:
            ref_type = str(ref.get("type", ""))
            value = ref.get("value")
            if not value:
                continue
            if ref_type == "CVE ID":
                cve = value if str(value).startswith("CVE-") else f"CVE-{value}"
                if cve not in aliases:
                    aliases.append(cve)
            elif "URL" in ref_type.upper() and value not in references:
                references.append(value)

        cwes = []
        for info in raw.get("nvd_additional_information") or []:
            cwe = info.get("cwe_id")
            if cwe and cwe not in cwes:
                cwes.append(cwe)
            cve = info.get("cve_id")
            if cve and cve not in aliases:
                aliases.append(cve)

        return VulnerabilityRecord(
            source=VulnerabilitySource.VULNDB,
            vuln_id=str(raw["vulndb_id"]),
            title=raw.get("title"),
            description=raw.get("description"),
            recommendation=raw.get("solution"),
            severity=resolve_severity(cvss_v3_score=cvss_v3_score, cvss_v2_score=cvss_v2_score),
            cvss_v2_score=cvss_v2_score,
            cvss_v2_vector=cvss_v2_vector,
            cvss_v3_score=cvss_v3_score,
            cvss_v3_vector=cvss_v3_vector,
            cwes=cwes,
            references=references,
            aliases=aliases,
            published=_parse_timestamp(raw.get("disclosure_date") or raw.get("vulndb_published_date")),
            updated=_parse_timestamp(raw.get("vulndb_last_modified")),
        )

    def _score(self, metric: dict, vector: str | None) -> float | None:
        if not metric:
            return None
        score = metric.get("score", metric.get("calculated_cvss_base_score"))
        if score is not None:
            return float(score)
        return score_vector(vector)[0]
