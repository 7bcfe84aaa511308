"""Source adapters for vulnerability intelligence services.

Provides:
- SourceAdapter protocol and shared infrastructure
- NvdAnalyzer for the NVD CVE API (CPE based)
- VulnDbAnalyzer for VulnDB (CPE based, OAuth 1.0a)
- NpmAuditAnalyzer for npm bulk advisories (npm package URLs)
- OssIndexAnalyzer for Sonatype OSS Index (package URLs)
- ANALYZERS: Adapter class per VulnerabilitySource
"""

from vulnsync.core.records import VulnerabilitySource

from .base import (
    Credentials,
    MalformedRecordError,
    PageResult,
    PageStatus,
    SourceAdapter,
    request_json,
)
from .nvd import NvdAnalyzer
from .vulndb import VulnDbAnalyzer
from .npm import NpmAuditAnalyzer
from .ossindex import OssIndexAnalyzer

ANALYZERS = {
    VulnerabilitySource.NVD: NvdAnalyzer,
    VulnerabilitySource.VULNDB: VulnDbAnalyzer,
    VulnerabilitySource.NPM: NpmAuditAnalyzer,
    VulnerabilitySource.OSSINDEX: OssIndexAnalyzer,
}

__all__ = [
    "ANALYZERS",
    "Credentials",
    "MalformedRecordError",
    "PageResult",
    "PageStatus",
    "SourceAdapter",
    "request_json",
    "NvdAnalyzer",
    "VulnDbAnalyzer",
    "NpmAuditAnalyzer",
    "OssIndexAnalyzer",
]
