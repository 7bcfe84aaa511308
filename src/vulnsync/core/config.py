"""Configuration management for vulnsync.

Loads configuration from environment variables using Pydantic models.
Every source gets its own SourceSettings block so the dispatch gate can be
handed one explicit, resolved configuration per run instead of looking up
global properties.

Provides:
- SourceSettings: Per-source enable flag, credentials and pacing
- Config: Pydantic model with all application settings
- load_config: Factory function to create Config instance
"""

import os

from pydantic import BaseModel, Field

from vulnsync.core.records import VulnerabilitySource


ENV_PREFIX = "VULNSYNC_"

# Defaults per source: (base_url, page_size, throttle_ms)
SOURCE_DEFAULTS = {
    VulnerabilitySource.NVD: ("https://services.nvd.nist.gov/rest/json/cves/2.0", 2000, 6000),
    VulnerabilitySource.VULNDB: ("https://vulndb.cyberriskanalytics.com/", 100, 1000),
    VulnerabilitySource.NPM: ("https://registry.npmjs.org/", 100, 1000),
    VulnerabilitySource.OSSINDEX: ("https://ossindex.sonatype.org/", 128, 1000),
}


class SourceSettings(BaseModel):
    """Settings for one vulnerability source.

    Attributes:
        enabled: Whether the source is administratively enabled
        api_key: Consumer key / username (plain text)
        api_secret: Consumer secret / token, Fernet-encrypted at rest
        base_url: Endpoint the analyzer talks to (also the cache target host)
        page_size: Results requested per page
        throttle_ms: Minimum spacing between consecutive requests in one run
        cache_validity_hours: How long a completed analysis stays current
        timeout_seconds: Per-request timeout
    """

    enabled: bool = Field(default=False)
    api_key: str = Field(default="")
    api_secret: str = Field(default="")
    base_url: str = Field(default="")
    page_size: int = Field(default=100, gt=0)
    throttle_ms: int = Field(default=1000, ge=0)
    cache_validity_hours: int = Field(default=12, ge=0)
    timeout_seconds: int = Field(default=30, gt=0)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _source_from_env(source: VulnerabilitySource) -> SourceSettings:
    """Build SourceSettings for a source from VULNSYNC_<SOURCE>_* variables."""
    prefix = f"{ENV_PREFIX}{source.value}_"
    base_url, page_size, throttle_ms = SOURCE_DEFAULTS[source]

    return SourceSettings(
        enabled=_env_bool(f"{prefix}ENABLED"),
        api_key=os.getenv(f"{prefix}API_KEY", ""),
        api_secret=os.getenv(f"{prefix}API_SECRET", ""),
        base_url=os.getenv(f"{prefix}BASE_URL", base_url),
        page_size=int(os.getenv(f"{prefix}PAGE_SIZE", page_size)),
        throttle_ms=int(os.getenv(f"{prefix}THROTTLE_MS", throttle_ms)),
        cache_validity_hours=int(os.getenv(f"{prefix}CACHE_VALIDITY_HOURS", 12)),
        timeout_seconds=int(os.getenv(f"{prefix}TIMEOUT_SECONDS", 30)),
    )


def _sources_from_env() -> dict[VulnerabilitySource, SourceSettings]:
    return {source: _source_from_env(source) for source in VulnerabilitySource}


class Config(BaseModel):
    """Application configuration loaded from the environment.

    All settings have sensible defaults; sources are disabled until
    VULNSYNC_<SOURCE>_ENABLED is set.

    Attributes:
        database_url: SQLAlchemy database URL (default: SQLite in current dir)
        secret_key: Fernet key used to decrypt source secrets
        log_level: Minimum log level for the CLI
        log_json: Render logs as JSON lines instead of console output
        sources: Per-source settings
    """

    # Database
    database_url: str = Field(
        default_factory=lambda: os.getenv(f"{ENV_PREFIX}DATABASE_URL", "sqlite+aiosqlite:///vulnsync.db")
    )

    # Secrets
    secret_key: str = Field(
        default_factory=lambda: os.getenv(f"{ENV_PREFIX}SECRET_KEY", "")
    )

    # Logging
    log_level: str = Field(
        default_factory=lambda: os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "info")
    )
    log_json: bool = Field(default_factory=lambda: _env_bool(f"{ENV_PREFIX}LOG_JSON"))

    sources: dict[VulnerabilitySource, SourceSettings] = Field(default_factory=_sources_from_env)

    def source(self, source: VulnerabilitySource) -> SourceSettings:
        """Settings for a source, falling back to disabled defaults."""
        settings = self.sources.get(source)
        if settings is None:
            base_url, page_size, throttle_ms = SOURCE_DEFAULTS[source]
            settings = SourceSettings(base_url=base_url, page_size=page_size, throttle_ms=throttle_ms)
        return settings


def load_config() -> Config:
    """Load configuration from environment variables.

    Returns:
        Populated Config instance
    """
    return Config()
