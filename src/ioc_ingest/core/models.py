"""
IOC Ingest Data Models

Defines data structures for sources, indicators, tracking records and
the result records passed between pipeline stages.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IndicatorType(str, Enum):
    """Canonical indicator types."""
    IPV4 = "ipv4"
    DOMAIN = "domain"
    URL = "url"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    """Severity tiers assigned by the classifier."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class FetchStatus(str, Enum):
    """Outcome of one source fetch attempt."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class NormalizeStatus(str, Enum):
    """Outcome of normalizing one staged file or one merger run."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    EMPTY = "empty"


class ScheduleTier(str, Enum):
    """Fetch schedule tiers."""
    MONTHLY = "monthly"
    EVERY_48_HOURS = "48hours"
    DAILY = "daily"


class PayloadType(str, Enum):
    """Staged payload format (also the staging file extension)."""
    CSV = "csv"
    TXT = "txt"
    JSON = "json"


class HandlerType(str, Enum):
    """Retrieval strategy used for a source."""
    PLAIN = "plain"
    GZIP = "gzip"
    ZIP = "zip"
    OTX_API = "otx_api"
    MALSHARE_API = "malshare_api"
    XML_EXTRACT = "xml_extract"
    PHISHSTATS_API = "phishstats_api"


class SourceDescriptor(BaseModel):
    """
    Static description of one threat-intelligence feed.

    Built once from configuration at startup; the handler field selects
    which FormatHandler retrieves the feed.
    """

    name: str
    key: str
    enabled: bool = False
    url: Optional[str] = None
    type: PayloadType
    filename: str
    handler: HandlerType
    schedule: ScheduleTier
    ttl: timedelta
    api_key: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("ttl")
    @classmethod
    def validate_ttl(cls, v: timedelta) -> timedelta:
        """TTL must be strictly positive."""
        if v <= timedelta(0):
            raise ValueError("ttl must be strictly positive")
        return v

    @property
    def staging_name(self) -> str:
        """File name of the primary staged payload."""
        return f"{self.filename}.{self.type.value}"


class FetchResult(BaseModel):
    """Uniform result returned by every format handler."""

    source: str
    status: FetchStatus
    count: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None
    reason: Optional[str] = None


class FetchRecord(BaseModel):
    """Last fetch outcome for one source, kept in the fetch tracking store."""

    name: str
    status: FetchStatus
    timestamp: datetime
    count: int = 0
    error: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class NormalizeRecord(BaseModel):
    """Processing state of one staged file, kept in the normalize tracking store."""

    file: str
    hash: Optional[str] = None
    timestamp: Optional[str] = None
    status: NormalizeStatus
    count: int = 0
    processed_at: datetime = Field(default_factory=utcnow)


class CanonicalIndicator(BaseModel):
    """
    Indicator produced by a feed parser, before persistence.

    Validation of this model is the record schema check applied by the
    upsert engine: type and value are required, confidence must fall in
    0-100 and tags must be strings.
    """

    type: IndicatorType
    value: str = Field(min_length=1)
    source: str = "unknown"
    description: str = ""
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    tags: List[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("source", mode="before")
    @classmethod
    def default_source(cls, v: Any) -> Any:
        return v or "unknown"

    @field_validator("first_seen", "last_seen")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None


@dataclass
class PersistedIndicator:
    """
    Row of the indicator store.

    observed_count is managed by the store: new rows are written with 0
    and every upsert batch increments each fingerprint it touched.
    """
    fingerprint: str
    type: str
    value: str
    source: str
    description: str
    first_seen: datetime
    last_seen: datetime
    severity: Severity
    severity_score: int
    confidence: int
    tags: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)
    observed_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "fingerprint": self.fingerprint,
            "type": self.type,
            "value": self.value,
            "source": self.source,
            "description": self.description,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "severity": self.severity.value,
            "severity_score": self.severity_score,
            "confidence": self.confidence,
            "tags": self.tags,
            "raw": self.raw,
            "observed_count": self.observed_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Classification:
    """Classifier output."""
    severity: Severity
    severity_score: int
    confidence: int


@dataclass
class UpsertResult:
    """Counts reported by one upsert call."""
    created: int = 0
    updated: int = 0
    total: int = 0
    batches: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "total": self.total,
            "batches": self.batches,
        }


class CycleSummary(BaseModel):
    """Structured summary of one fetch cycle."""

    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    duration: float = 0.0
    results: List[FetchResult] = Field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[FetchResult], duration: float) -> "CycleSummary":
        return cls(
            successful=sum(1 for r in results if r.status == FetchStatus.SUCCESS),
            failed=sum(1 for r in results if r.status == FetchStatus.FAILED),
            skipped=sum(1 for r in results if r.status == FetchStatus.SKIPPED),
            total=len(results),
            duration=round(duration, 2),
            results=results,
        )


class MergeResult(BaseModel):
    """Report of one normalizer run."""

    task: str
    status: NormalizeStatus
    previous: int = 0
    added: int = 0
    total: int = 0
    files: int = 0
    reason: Optional[str] = None
    error: Optional[str] = None
