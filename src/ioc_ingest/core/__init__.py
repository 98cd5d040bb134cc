"""
Core module for IOC Ingest.

Contains shared models, configuration, and exceptions used across all modules.
"""

from ioc_ingest.core.config import AppConfig, get_config, reload_config
from ioc_ingest.core.errors import (
    FetchError,
    IngestError,
    PayloadError,
    SourceDisabledError,
    StoreError,
    UnknownNormalizerError,
    UnknownSourceError,
)
from ioc_ingest.core.models import (
    CanonicalIndicator,
    FetchRecord,
    FetchResult,
    FetchStatus,
    IndicatorType,
    ScheduleTier,
    Severity,
    SourceDescriptor,
)

__all__ = [
    "AppConfig",
    "get_config",
    "reload_config",
    "IngestError",
    "FetchError",
    "PayloadError",
    "StoreError",
    "UnknownSourceError",
    "SourceDisabledError",
    "UnknownNormalizerError",
    "CanonicalIndicator",
    "FetchRecord",
    "FetchResult",
    "FetchStatus",
    "IndicatorType",
    "ScheduleTier",
    "Severity",
    "SourceDescriptor",
]
