"""Source adapter protocol and shared HTTP infrastructure.

Provides:
- SourceAdapter protocol: the one interface the orchestrator depends on
- Credentials: Resolved (decrypted) credentials handed to an adapter
- PageResult / PageStatus: Structured result of one page fetch
- MalformedRecordError: Raised by normalize() for records it cannot map
- request_json: One HTTP request with timeout, returning status and JSON body
- error_page / timeout_page: Helpers to build failed page results
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import aiohttp
import structlog

from vulnsync.core.persistence.models import Component
from vulnsync.core.records import AnalyzerIdentity, VulnerabilityRecord, VulnerabilitySource

logger = structlog.get_logger()


class PageStatus(str, Enum):
    """Outcome of a single page fetch."""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    NOT_APPLICABLE = "not_applicable"


@dataclass
class PageResult:
    """One page of raw records from a source.

    Attributes:
        status: Fetch outcome; anything but SUCCESS/NOT_APPLICABLE is a failure
        results: Raw source-native records on this page
        page: Page number the source reports (1-based)
        total: Total number of results the source reports for the query
        error: Error description from the source or transport
        duration_seconds: Wall time of the request
    """
    status: PageStatus
    results: list[dict[str, Any]] = field(default_factory=list)
    page: int = 1
    total: int = 0
    error: str = ""
    duration_seconds: float = 0.0

    @property
    def successful(self) -> bool:
        return self.status in (PageStatus.SUCCESS, PageStatus.NOT_APPLICABLE)


@dataclass(frozen=True)
class Credentials:
    """Credentials resolved by the dispatch gate.

    Attributes:
        key: Consumer key / username (may be empty)
        secret: Decrypted consumer secret / token / API key (may be empty)
    """
    key: str = ""
    secret: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.key and self.secret)


class MalformedRecordError(Exception):
    """Raised when a raw record cannot be mapped to a VulnerabilityRecord."""


@runtime_checkable
class SourceAdapter(Protocol):
    """Protocol for vulnerability source adapters.

    Adapters own all source-specific knowledge: which components they can
    analyze, how to query and paginate, and how to map records.
    """
    analyzer: AnalyzerIdentity
    target_host: str

    def identity(self) -> VulnerabilitySource:
        """Fixed source tag of this adapter."""
        ...

    def supports(self, component: Component) -> bool:
        """Whether this adapter can analyze the component at all."""
        ...

    def query_key(self, component: Component) -> str | None:
        """Identity (CPE or package URL) used for the query and the cache."""
        ...

    async def fetch_page(self, query_key: str, page_size: int, page_number: int) -> PageResult:
        """Issue one request and return a page of raw records."""
        ...

    def normalize(self, raw: dict[str, Any]) -> VulnerabilityRecord:
        """Map one raw record into canonical form."""
        ...


def error_page(error: str, page: int = 1, duration: float = 0.0) -> PageResult:
    return PageResult(status=PageStatus.ERROR, page=page, error=error, duration_seconds=duration)


def timeout_page(timeout: int, page: int = 1, duration: float = 0.0) -> PageResult:
    return PageResult(
        status=PageStatus.TIMEOUT,
        page=page,
        error=f"Request timed out after {timeout}s",
        duration_seconds=duration,
    )


async def request_json(
    method: str,
    url: str,
    timeout: int = 30,
    **kwargs,
) -> tuple[int, Any]:
    """Perform one HTTP request and decode the JSON body.

    Bodies that are not JSON are returned as text so callers can include
    them in an error description.

    Args:
        method: HTTP method ("GET", "POST")
        url: Absolute URL
        timeout: Total request timeout in seconds
        **kwargs: Passed to aiohttp (params, json, headers, auth)

    Returns:
        Tuple of (HTTP status, decoded body)

    Raises:
        aiohttp.ClientError: On connection-level failures
        asyncio.TimeoutError: If the request exceeds the timeout
    """
    log = logger.bind(method=method, url=url, timeout=timeout)
    client_timeout = aiohttp.ClientTimeout(total=timeout)

    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.request(method, url, **kwargs) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = await response.text()
            log.debug("http_response", status=response.status)
            return response.status, body


async def fetch_json_page(
    method: str,
    url: str,
    timeout: int,
    page: int,
    **kwargs,
) -> tuple[int | None, Any, PageResult | None, float]:
    """Run request_json and translate transport failures into page results.

    Returns:
        Tuple of (status, body, failed_page, duration). failed_page is set
        (and status/body are None) when the request itself failed.
    """
    start = time.monotonic()
    try:
        status, body = await request_json(method, url, timeout=timeout, **kwargs)
    except asyncio.TimeoutError:
        duration = time.monotonic() - start
        logger.warning("source_request_timeout", url=url, page=page, timeout=timeout)
        return None, None, timeout_page(timeout, page, duration), duration
    except aiohttp.ClientError as e:
        duration = time.monotonic() - start
        logger.warning("source_request_failed", url=url, page=page, error=str(e))
        return None, None, error_page(f"Connection error: {e}", page, duration), duration
    return status, body, None, time.monotonic() - start
