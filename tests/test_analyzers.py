"""Unit tests for the source adapters.

HTTP is mocked at request_json (or aiohttp.ClientSession for the transport
helper itself). No network access required.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from vulnsync.analyzers import (
    Credentials,
    MalformedRecordError,
    NpmAuditAnalyzer,
    NvdAnalyzer,
    OssIndexAnalyzer,
    PageStatus,
    SourceAdapter,
    VulnDbAnalyzer,
    request_json,
)
from vulnsync.analyzers.npm import parse_npm_purl
from vulnsync.analyzers.ossindex import _coordinates
from vulnsync.core.persistence.models import Component
from vulnsync.core.records import Severity, VulnerabilitySource


CPE = "cpe:2.3:a:apache:log4j:2.14.1:*:*:*:*:*:*:*"

NVD_CVE = {
    "cve": {
        "id": "CVE-2021-44228",
        "published": "2021-12-10T10:15:09.143",
        "lastModified": "2023-04-03T20:15:08.277",
        "descriptions": [
            {"lang": "es", "value": "Apache Log4j2 ..."},
            {"lang": "en", "value": "Apache Log4j2 JNDI features do not protect against attacker controlled LDAP."},
        ],
        "metrics": {
            "cvssMetricV31": [
                {
                    "source": "nvd@nist.gov",
                    "type": "Primary",
                    "cvssData": {
                        "version": "3.1",
                        "vectorString": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:C/C:H/I:H/A:H",
                        "baseScore": 10.0,
                        "baseSeverity": "CRITICAL",
                    },
                }
            ],
            "cvssMetricV2": [
                {
                    "type": "Primary",
                    "baseSeverity": "HIGH",
                    "cvssData": {"vectorString": "AV:N/AC:M/Au:N/C:C/I:C/A:C", "baseScore": 9.3},
                }
            ],
        },
        "weaknesses": [
            {"description": [{"lang": "en", "value": "CWE-917"}, {"lang": "en", "value": "NVD-CWE-Other"}]},
            {"description": [{"lang": "en", "value": "CWE-502"}]},
        ],
        "references": [
            {"url": "https://logging.apache.org/log4j/2.x/security.html"},
            {"url": "http://www.openwall.com/lists/oss-security/2021/12/10/1"},
        ],
    }
}

VULNDB_RECORD = {
    "vulndb_id": 275958,
    "title": "Apache Log4j2 JndiLookup Remote Code Execution",
    "description": "Log4j2 contains a flaw in JndiLookup.",
    "solution": "Upgrade to version 2.15.0 or later.",
    "disclosure_date": "2021-12-09T00:00:00Z",
    "vulndb_last_modified": "2022-01-05T12:00:00Z",
    "ext_references": [
        {"type": "CVE ID", "value": "2021-44228"},
        {"type": "Vendor Specific Advisory URL", "value": "https://logging.apache.org/log4j/2.x/security.html"},
        {"type": "Generic Informational URL", "value": "https://www.lunasec.io/docs/blog/log4j-zero-day/"},
    ],
    "cvss_version_three_metrics": [
        {
            "attack_vector": "NETWORK",
            "attack_complexity": "LOW",
            "privileges_required": "NONE",
            "user_interaction": "NONE",
            "scope": "CHANGED",
            "confidentiality_impact": "HIGH",
            "integrity_impact": "HIGH",
            "availability_impact": "HIGH",
            "score": 10.0,
        }
    ],
    "cvss_metrics": [
        {
            "access_vector": "NETWORK",
            "access_complexity": "MEDIUM",
            "authentication": "NONE",
            "confidentiality_impact": "COMPLETE",
            "integrity_impact": "COMPLETE",
            "availability_impact": "COMPLETE",
        }
    ],
    "nvd_additional_information": [{"cwe_id": "CWE-502", "cve_id": "CVE-2021-44228"}],
}

NPM_ADVISORY = {
    "id": 1106913,
    "url": "https://github.com/advisories/GHSA-p6mc-m468-83gw",
    "title": "Prototype Pollution in lodash",
    "severity": "high",
    "vulnerable_versions": ">=3.7.0 <4.17.19",
    "cwe": ["CWE-770", "CWE-1321"],
    "cvss": {"score": 7.4, "vectorString": "CVSS:3.1/AV:N/AC:H/PR:N/UI:N/S:U/C:N/I:H/A:H"},
}

OSSINDEX_REPORT = [
    {
        "coordinates": "pkg:npm/lodash@4.17.15",
        "reference": "https://ossindex.sonatype.org/component/pkg:npm/lodash@4.17.15",
        "vulnerabilities": [
            {
                "id": "CVE-2020-8203",
                "displayName": "CVE-2020-8203",
                "title": "[CVE-2020-8203] Prototype pollution in zipObjectDeep",
                "description": "Prototype pollution attack when using _.zipObjectDeep in lodash before 4.17.20.",
                "cvssScore": 7.4,
                "cvssVector": "CVSS:3.1/AV:N/AC:H/PR:N/UI:N/S:U/C:N/I:H/A:H",
                "cwe": "CWE-770",
                "cve": "CVE-2020-8203",
                "reference": "https://ossindex.sonatype.org/vulnerability/CVE-2020-8203",
                "externalReferences": ["https://github.com/lodash/lodash/issues/4874"],
            }
        ],
    }
]


def component(**kwargs):
    values = {"name": "log4j-core", "version": "2.14.1", "internal": False}
    values.update(kwargs)
    return Component(**values)


def mock_request(status, body):
    return patch("vulnsync.analyzers.base.request_json", new=AsyncMock(return_value=(status, body)))


def test_adapters_satisfy_protocol():
    """Test every adapter implements the SourceAdapter protocol."""
    adapters = [
        NvdAnalyzer(),
        VulnDbAnalyzer(Credentials("key", "secret")),
        NpmAuditAnalyzer(),
        OssIndexAnalyzer(),
    ]
    for adapter in adapters:
        assert isinstance(adapter, SourceAdapter)
    assert [a.identity() for a in adapters] == [
        VulnerabilitySource.NVD,
        VulnerabilitySource.VULNDB,
        VulnerabilitySource.NPM,
        VulnerabilitySource.OSSINDEX,
    ]


# Transport

@pytest.mark.asyncio
async def test_request_json_decodes_body():
    """Test request_json returns the status and decoded JSON body."""
    response = MagicMock()
    response.status = 200
    response.json = AsyncMock(return_value={"totalResults": 0})
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.request = MagicMock(return_value=response)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)

    with patch("aiohttp.ClientSession", return_value=session) as client:
        status, body = await request_json("GET", "https://nvd.example/", timeout=5, params={"a": 1})

    assert status == 200
    assert body == {"totalResults": 0}
    session.request.assert_called_once_with("GET", "https://nvd.example/", params={"a": 1})
    assert client.call_args.kwargs["timeout"].total == 5


@pytest.mark.asyncio
async def test_request_json_falls_back_to_text():
    """Test a non-JSON body is returned as text."""
    response = MagicMock()
    response.status = 502
    response.json = AsyncMock(side_effect=ValueError("Expecting value"))
    response.text = AsyncMock(return_value="Bad Gateway")
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.request = MagicMock(return_value=response)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)

    with patch("aiohttp.ClientSession", return_value=session):
        status, body = await request_json("GET", "https://nvd.example/")

    assert status == 502
    assert body == "Bad Gateway"


# NVD

@pytest.mark.asyncio
async def test_nvd_fetch_page_reports_position():
    """Test NVD paging parameters and the page/total derived from the response."""
    adapter = NvdAnalyzer(Credentials(secret="nvd-api-key"), base_url="https://nvd.example/cves/2.0")
    body = {"resultsPerPage": 100, "startIndex": 100, "totalResults": 250, "vulnerabilities": [NVD_CVE] * 100}

    with mock_request(200, body) as request:
        page = await adapter.fetch_page(CPE, 100, 2)

    assert page.status == PageStatus.SUCCESS
    assert page.page == 2
    assert page.total == 250
    assert len(page.results) == 100

    kwargs = request.call_args.kwargs
    assert kwargs["params"] == {"cpeName": CPE, "resultsPerPage": 100, "startIndex": 100}
    assert kwargs["headers"] == {"apiKey": "nvd-api-key"}


@pytest.mark.asyncio
async def test_nvd_null_total_is_empty_page():
    """Test a null totalResults reads as zero instead of raising."""
    body = {"startIndex": None, "totalResults": None, "vulnerabilities": []}

    with mock_request(200, body):
        page = await NvdAnalyzer().fetch_page(CPE, 100, 1)

    assert page.status == PageStatus.SUCCESS
    assert page.page == 1
    assert page.total == 0


@pytest.mark.asyncio
async def test_nvd_without_key_sends_no_header():
    """Test the apiKey header is only sent when a key is configured."""
    with mock_request(200, {"totalResults": 0, "vulnerabilities": []}) as request:
        page = await NvdAnalyzer().fetch_page(CPE, 2000, 1)

    assert page.status == PageStatus.SUCCESS
    assert page.total == 0
    assert request.call_args.kwargs["headers"] == {}


@pytest.mark.asyncio
async def test_nvd_unknown_cpe_is_not_applicable():
    """Test HTTP 404 means NVD does not know the CPE."""
    with mock_request(404, ""):
        page = await NvdAnalyzer().fetch_page(CPE, 2000, 1)

    assert page.status == PageStatus.NOT_APPLICABLE
    assert page.successful


@pytest.mark.asyncio
async def test_nvd_server_error_is_failure():
    """Test non-2xx responses become error pages with the source's detail."""
    with mock_request(503, "Service Unavailable"):
        page = await NvdAnalyzer().fetch_page(CPE, 2000, 1)

    assert page.status == PageStatus.ERROR
    assert not page.successful
    assert "503" in page.error


@pytest.mark.asyncio
async def test_nvd_timeout_is_failure():
    """Test a request timeout becomes a TIMEOUT page."""
    with patch("vulnsync.analyzers.base.request_json", new=AsyncMock(side_effect=asyncio.TimeoutError())):
        page = await NvdAnalyzer(timeout=5).fetch_page(CPE, 2000, 1)

    assert page.status == PageStatus.TIMEOUT
    assert "5s" in page.error


@pytest.mark.asyncio
async def test_nvd_connection_error_is_failure():
    """Test connection failures become error pages."""
    error = aiohttp.ClientConnectionError("connection refused")
    with patch("vulnsync.analyzers.base.request_json", new=AsyncMock(side_effect=error)):
        page = await NvdAnalyzer().fetch_page(CPE, 2000, 1)

    assert page.status == PageStatus.ERROR
    assert "connection refused" in page.error


def test_nvd_normalize():
    """Test mapping of an NVD CVE item."""
    record = NvdAnalyzer().normalize(NVD_CVE)

    assert record.source == VulnerabilitySource.NVD
    assert record.vuln_id == "CVE-2021-44228"
    assert record.description.startswith("Apache Log4j2 JNDI")
    assert record.severity == Severity.CRITICAL
    assert record.cvss_v3_score == 10.0
    assert record.cvss_v3_vector == "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:C/C:H/I:H/A:H"
    assert record.cvss_v2_score == 9.3
    assert record.cwes == ["CWE-917", "CWE-502"]
    assert len(record.references) == 2
    assert record.published.year == 2021


def test_nvd_normalize_rejects_record_without_id():
    """Test a record without cve.id is malformed."""
    with pytest.raises(MalformedRecordError):
        NvdAnalyzer().normalize({"cve": {"descriptions": []}})


def test_nvd_supports_cpe_components_only():
    """Test NVD analyzes components with a CPE and keys them by it."""
    adapter = NvdAnalyzer()

    assert adapter.supports(component(cpe=CPE))
    assert adapter.query_key(component(cpe=CPE)) == CPE
    assert not adapter.supports(component(purl="pkg:maven/org.apache.logging.log4j/log4j-core@2.14.1"))


# VulnDB

@pytest.mark.asyncio
async def test_vulndb_error_payload_is_failure():
    """Test an HTTP 200 body with an error key is a failure, not zero results."""
    adapter = VulnDbAnalyzer(Credentials("consumer-key", "consumer-secret"))

    with mock_request(200, {"error": "Invalid CPE"}):
        page = await adapter.fetch_page(CPE, 100, 1)

    assert page.status == PageStatus.ERROR
    assert "Invalid CPE" in page.error


@pytest.mark.asyncio
async def test_vulndb_fetch_page_signs_request():
    """Test find_by_cpe requests are OAuth signed and paging comes from the body."""
    adapter = VulnDbAnalyzer(Credentials("consumer-key", "consumer-secret"), base_url="https://vulndb.example/")
    body = {"current_page": 2, "total_entries": 150, "results": [VULNDB_RECORD] * 50}

    with mock_request(200, body) as request:
        page = await adapter.fetch_page(CPE, 100, 2)

    assert page.status == PageStatus.SUCCESS
    assert page.page == 2
    assert page.total == 150

    method, url = request.call_args.args[:2]
    headers = request.call_args.kwargs["headers"]
    assert method == "GET"
    assert url.startswith("https://vulndb.example/api/v1/vulnerabilities/find_by_cpe?")
    assert "size=100" in url and "page=2" in url
    assert headers["Authorization"].startswith("OAuth ")
    assert 'oauth_consumer_key="consumer-key"' in headers["Authorization"]
    assert 'oauth_signature_method="HMAC-SHA1"' in headers["Authorization"]


@pytest.mark.asyncio
async def test_vulndb_null_total_is_empty_page():
    """Test a null total_entries reads as zero instead of raising."""
    adapter = VulnDbAnalyzer(Credentials("consumer-key", "consumer-secret"))

    with mock_request(200, {"results": [], "current_page": 1, "total_entries": None}):
        page = await adapter.fetch_page(CPE, 100, 1)

    assert page.status == PageStatus.SUCCESS
    assert page.total == 0
    assert page.results == []


def test_vulndb_normalize():
    """Test mapping of a VulnDB record including rebuilt CVSS vectors."""
    record = VulnDbAnalyzer(Credentials("k", "s")).normalize(VULNDB_RECORD)

    assert record.source == VulnerabilitySource.VULNDB
    assert record.vuln_id == "275958"
    assert record.recommendation == "Upgrade to version 2.15.0 or later."
    assert record.cvss_v3_vector == "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:C/C:H/I:H/A:H"
    assert record.cvss_v3_score == 10.0
    assert record.cvss_v2_vector == "AV:N/AC:M/Au:N/C:C/I:C/A:C"
    assert record.cvss_v2_score == 9.3
    assert record.severity == Severity.CRITICAL
    assert record.aliases == ["CVE-2021-44228"]
    assert record.cwes == ["CWE-502"]
    assert record.references == [
        "https://logging.apache.org/log4j/2.x/security.html",
        "https://www.lunasec.io/docs/blog/log4j-zero-day/",
    ]


# npm audit

def test_parse_npm_purl():
    """Test npm package URL parsing, including scoped packages."""
    assert parse_npm_purl("pkg:npm/lodash@4.17.20") == ("lodash", "4.17.20")
    assert parse_npm_purl("pkg:npm/%40babel/core@7.0.0") == ("@babel/core", "7.0.0")
    assert parse_npm_purl("pkg:npm/lodash") is None
    assert parse_npm_purl("pkg:pypi/requests@2.31.0") is None
    assert parse_npm_purl("not a purl") is None
    assert parse_npm_purl(None) is None


@pytest.mark.asyncio
async def test_npm_fetch_posts_bulk_request():
    """Test npm audit posts {name: [version]} and returns a single page."""
    adapter = NpmAuditAnalyzer()

    with mock_request(200, {"lodash": [NPM_ADVISORY]}) as request:
        page = await adapter.fetch_page("pkg:npm/lodash@4.17.15", 100, 1)

    assert page.status == PageStatus.SUCCESS
    assert page.total == 1
    assert page.page == 1
    method, url = request.call_args.args[:2]
    assert method == "POST"
    assert url == "https://registry.npmjs.org/-/npm/v1/security/advisories/bulk"
    assert request.call_args.kwargs["json"] == {"lodash": ["4.17.15"]}


@pytest.mark.asyncio
async def test_npm_error_payload_is_failure():
    """Test an error body from the registry is a failed page."""
    with mock_request(200, {"error": "Internal Server Error"}):
        page = await NpmAuditAnalyzer().fetch_page("pkg:npm/lodash@4.17.15", 100, 1)

    assert page.status == PageStatus.ERROR


def test_npm_normalize():
    """Test mapping of an npm advisory."""
    record = NpmAuditAnalyzer().normalize(NPM_ADVISORY)

    assert record.source == VulnerabilitySource.NPM
    assert record.vuln_id == "1106913"
    assert record.severity == Severity.HIGH
    assert record.cvss_v3_score == 7.4
    assert record.cvss_v2_score is None
    assert record.cwes == ["CWE-770", "CWE-1321"]
    assert record.aliases == ["GHSA-p6mc-m468-83gw"]
    assert record.references == ["https://github.com/advisories/GHSA-p6mc-m468-83gw"]


def test_npm_supports_versioned_npm_purls():
    """Test only versioned pkg:npm components are analyzed by npm audit."""
    adapter = NpmAuditAnalyzer()

    assert adapter.supports(component(purl="pkg:npm/lodash@4.17.15"))
    assert not adapter.supports(component(purl="pkg:npm/lodash"))
    assert not adapter.supports(component(cpe=CPE))
    assert adapter.query_key(component(purl="pkg:maven/a/b@1")) is None


# OSS Index

def test_ossindex_coordinates_drop_qualifiers():
    """Test the cache identity is the purl without qualifiers."""
    assert _coordinates("pkg:npm/lodash@4.17.15?repository_url=https://r.example") == "pkg:npm/lodash@4.17.15"
    assert _coordinates("pkg:npm/lodash") is None


@pytest.mark.asyncio
async def test_ossindex_flattens_report():
    """Test vulnerabilities of the component report form one page."""
    adapter = OssIndexAnalyzer()

    with mock_request(200, OSSINDEX_REPORT) as request:
        page = await adapter.fetch_page("pkg:npm/lodash@4.17.15", 128, 1)

    assert page.status == PageStatus.SUCCESS
    assert page.total == 1
    assert page.results[0]["id"] == "CVE-2020-8203"
    assert request.call_args.kwargs["json"] == {"coordinates": ["pkg:npm/lodash@4.17.15"]}
    assert "auth" not in request.call_args.kwargs


@pytest.mark.asyncio
async def test_ossindex_uses_basic_auth_with_credentials():
    """Test username and token are sent as basic auth."""
    adapter = OssIndexAnalyzer(Credentials("user@example.com", "token"))

    with mock_request(200, []) as request:
        await adapter.fetch_page("pkg:npm/lodash@4.17.15", 128, 1)

    auth = request.call_args.kwargs["auth"]
    assert isinstance(auth, aiohttp.BasicAuth)
    assert auth.login == "user@example.com"


@pytest.mark.asyncio
async def test_ossindex_error_object_is_failure():
    """Test a JSON object instead of a report list is an error page."""
    with mock_request(200, {"code": 429, "message": "Too Many Requests"}):
        page = await OssIndexAnalyzer().fetch_page("pkg:npm/lodash@4.17.15", 128, 1)

    assert page.status == PageStatus.ERROR
    assert "Too Many Requests" in page.error


def test_ossindex_normalize():
    """Test mapping of an OSS Index vulnerability."""
    record = OssIndexAnalyzer().normalize(OSSINDEX_REPORT[0]["vulnerabilities"][0])

    assert record.source == VulnerabilitySource.OSSINDEX
    assert record.vuln_id == "CVE-2020-8203"
    assert record.severity == Severity.HIGH
    assert record.cvss_v3_score == 7.4
    assert record.cwes == ["CWE-770"]
    assert record.aliases == ["CVE-2020-8203"]
    assert record.references == [
        "https://ossindex.sonatype.org/vulnerability/CVE-2020-8203",
        "https://github.com/lodash/lodash/issues/4874",
    ]


@pytest.mark.asyncio
async def test_ossindex_skips_malformed_report_entries():
    """Test report entries that are not objects are ignored."""
    body = [None, "lodash", {"coordinates": "pkg:npm/lodash@4.17.15", "vulnerabilities": None}] + OSSINDEX_REPORT

    with mock_request(200, body):
        page = await OssIndexAnalyzer().fetch_page("pkg:npm/lodash@4.17.15", 128, 1)

    assert page.status == PageStatus.SUCCESS
    assert [v["id"] for v in page.results] == ["CVE-2020-8203"]


def test_ossindex_bare_score_is_stored_as_v3():
    """Test a score without a vector is kept on the v3 scale it was banded on."""
    raw = {"id": "sonatype-2021-0001", "title": "Unscored vector", "cvssScore": 9.8}

    record = OssIndexAnalyzer().normalize(raw)

    assert record.severity == Severity.CRITICAL
    assert record.cvss_v3_score == 9.8
    assert record.cvss_v3_vector is None
    assert record.cvss_v2_score is None
