"""
Configuration management for the IOC ingestion service.

Uses Pydantic Settings for environment variable validation and type safety.
"""

from typing import Optional

from croniter import croniter
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IngestConfig(BaseSettings):
    """Global ingestion (fetch + parse + upsert) configuration."""

    sources_enabled: bool = Field(
        default=False,
        description="Master switch for IOC source ingestion"
    )
    feeds_path: str = Field(
        default="./data/ingested",
        description="Directory where raw feed payloads are staged"
    )
    fetch_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum attempts per HTTP request"
    )
    fetch_timeout_ms: int = Field(
        default=30000,
        ge=1000,
        description="HTTP request timeout in milliseconds"
    )
    request_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Pause between sources within a fetch cycle"
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="User-Agent sent with every feed request"
    )

    model_config = SettingsConfigDict(env_prefix="IOC_")


class SourceConfig(BaseSettings):
    """Per-source enable flags (IOC_SOURCE_<KEY>=true)."""

    urlhaus: bool = False
    ciarmy: bool = False
    threatfox: bool = False
    phishtank: bool = False
    spamhaus: bool = False
    emerging_threats: bool = False
    otx: bool = False
    bazaar: bool = False
    bazaar_yara: bool = False
    dshield_openioc: bool = False
    dshield_threatfeeds: bool = False
    malshare: bool = False
    phishstats: bool = False

    model_config = SettingsConfigDict(env_prefix="IOC_SOURCE_")


class SourceUrlConfig(BaseSettings):
    """Per-source remote URLs (IOC_URL_<KEY>=https://...)."""

    urlhaus: Optional[str] = None
    ciarmy: Optional[str] = None
    threatfox: Optional[str] = None
    phishtank: Optional[str] = None
    spamhaus: Optional[str] = None
    emerging_threats: Optional[str] = None
    otx: Optional[str] = None
    bazaar: Optional[str] = None
    bazaar_yara: Optional[str] = None
    dshield_openioc: Optional[str] = None
    dshield_threatfeeds: Optional[str] = None
    malshare: Optional[str] = None
    phishstats: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="IOC_URL_")


class ApiKeyConfig(BaseSettings):
    """Vendor API keys."""

    otx_api_key: Optional[str] = Field(
        default=None,
        description="AlienVault OTX API key"
    )
    malshare_api_key: Optional[str] = Field(
        default=None,
        description="MalShare API key"
    )

    model_config = SettingsConfigDict(env_prefix="")


class PhishStatsConfig(BaseSettings):
    """Paging settings for the PhishStats API."""

    limit: int = Field(default=100, ge=1, description="Entries per page")
    pages: int = Field(default=3, ge=1, description="Pages fetched per run")

    model_config = SettingsConfigDict(env_prefix="PHISHSTATS_")


class ScheduleConfig(BaseSettings):
    """Cron expressions, one per schedule tier."""

    monthly: str = Field(
        default="0 0 1 * *",
        description="Cron expression for monthly sources"
    )
    every_48_hours: str = Field(
        default="0 0 */2 * *",
        validation_alias=AliasChoices("CRON_48_HOURS", "every_48_hours"),
        description="Cron expression for 48-hour sources"
    )
    daily: str = Field(
        default="0 0 * * *",
        description="Cron expression for daily sources"
    )

    @field_validator("monthly", "every_48_hours", "daily")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        """Reject expressions croniter cannot schedule."""
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v!r}")
        return v

    model_config = SettingsConfigDict(env_prefix="CRON_", populate_by_name=True)


class NormalizeConfig(BaseSettings):
    """Normalization (staged-file merging) configuration."""

    run_jobs: bool = Field(
        default=False,
        validation_alias=AliasChoices("RUN_JOBS", "run_jobs"),
        description="Master switch for the normalization subsystem"
    )
    input_path: str = Field(
        default="./data/ingested",
        description="Directory holding staged feed files"
    )
    output_path: str = Field(
        default="./data/normalized",
        description="Directory for merged artifacts and tracking"
    )

    ip_lists: bool = False
    threat_intel: bool = False
    phishing_urls: bool = False
    software_detections: bool = False

    output_ip_list: str = "merged_ip_list.txt"
    output_threat_intel: str = "merged_threat_data.csv"
    output_phishing_urls: str = "merged_phishing_data.csv"
    output_software_detections: str = "merged_software_data.csv"

    model_config = SettingsConfigDict(env_prefix="NORMALIZE_", populate_by_name=True)


class StoreConfig(BaseSettings):
    """Indicator store location."""

    path: str = Field(
        default="./data/indicators.db",
        description="Path to the SQLite indicator store"
    )

    model_config = SettingsConfigDict(env_prefix="INDICATOR_STORE_")


class AppConfig(BaseSettings):
    """Main application configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # Nested configurations
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    sources: SourceConfig = Field(default_factory=SourceConfig)
    urls: SourceUrlConfig = Field(default_factory=SourceUrlConfig)
    api_keys: ApiKeyConfig = Field(default_factory=ApiKeyConfig)
    phishstats: PhishStatsConfig = Field(default_factory=PhishStatsConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    normalize: NormalizeConfig = Field(default_factory=NormalizeConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global config instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the global configuration instance.

    Lazily loads configuration on first access.

    Returns:
        AppConfig: The global configuration instance
    """
    global _config
    if _config is None:
        _config = AppConfig()
    return _config


def reload_config() -> AppConfig:
    """
    Reload configuration from environment variables.

    Useful for testing or when environment changes.

    Returns:
        AppConfig: The reloaded configuration instance
    """
    global _config
    _config = None
    return get_config()
