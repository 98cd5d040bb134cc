"""
Feed Parsers

Turn staged feed files into CanonicalIndicator lists. Each parser takes
a staged file path (plus the source name for line feeds); missing files
and malformed JSON log and yield an empty list.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError

from ioc_ingest.core.models import CanonicalIndicator, IndicatorType, utcnow
from ioc_ingest.feeds.extract import detect_ioc_type, hash_type

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

IPV4_IN_LINE = re.compile(r"(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})")

CSV_CONFIDENCE = 75
TXT_CONFIDENCE = 80
OTX_DEFAULT_CONFIDENCE = 70
PHISHSTATS_URL_CONFIDENCE = 80
PHISHSTATS_IP_CONFIDENCE = 75
BAZAAR_YARA_CONFIDENCE = 85
MALSHARE_CONFIDENCE = 75

# Field aliases, first present key wins
OTX_VALUE_KEYS = ("indicator", "content")
PHISHSTATS_URL_KEYS = ("url", "phish_url")
HASH_KEYS = {
    "sha256": ("sha256_hash", "sha256"),
    "sha1": ("sha1_hash", "sha1"),
    "md5": ("md5_hash", "md5"),
}

OTX_TYPE_MAP = {
    "ipv4": IndicatorType.IPV4,
    "domain": IndicatorType.DOMAIN,
    "hostname": IndicatorType.DOMAIN,
    "url": IndicatorType.URL,
    "uri": IndicatorType.URL,
}


def _first(entry: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value:
            return value
    return None


def _parse_time(value: Any) -> Optional[datetime]:
    """Parse an ISO-ish timestamp, returning None when absent or unparseable."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip().replace("Z", "+00:00")
    for candidate in (text, text.replace(" ", "T", 1)):
        try:
            return datetime.fromisoformat(candidate)
        except ValueError:
            continue
    logger.debug(f"Unparseable timestamp: {value!r}")
    return None


def _read_lines(path: Path) -> Optional[List[str]]:
    if not path.exists():
        logger.warning(f"Feed file not found: {path}")
        return None
    content = path.read_text(encoding="utf-8", errors="replace")
    return [line.strip() for line in content.split("\n")]


def _read_json(path: Path) -> Any:
    if not path.exists():
        logger.warning(f"Feed file not found: {path}")
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8", errors="replace"))
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing {path.name}: {e}")
        return None


def _build(indicators: List[CanonicalIndicator], **fields) -> None:
    """Append a CanonicalIndicator, dropping it with a warning if invalid."""
    try:
        indicators.append(CanonicalIndicator(**fields))
    except ValidationError as e:
        logger.warning(f"Dropping malformed {fields.get('source')} record: {e.error_count()} errors")


def parse_csv_feed(path: PathLike, source: str) -> List[CanonicalIndicator]:
    """
    Parse a comma-separated feed whose first column is the indicator.

    Args:
        path: Staged CSV file
        source: Source name recorded on each indicator

    Returns:
        List of indicators (unknown-type values are kept as type unknown)
    """
    lines = _read_lines(Path(path))
    if lines is None:
        return []

    now = utcnow()
    indicators: List[CanonicalIndicator] = []

    for line in lines:
        if not line or line.startswith("#"):
            continue

        parts = [p.strip().replace('"', "").replace("'", "") for p in line.split(",")]
        value = parts[0]
        if not value:
            continue

        ioc_type = detect_ioc_type(value)
        description = parts[1] if len(parts) > 1 and parts[1] else f"IOC from {source}"

        _build(
            indicators,
            type=ioc_type,
            value=value,
            source=source,
            description=description,
            first_seen=now,
            last_seen=now,
            confidence=CSV_CONFIDENCE,
            tags=[source, ioc_type.value],
        )

    return indicators


def parse_txt_feed(path: PathLike, source: str) -> List[CanonicalIndicator]:
    """Parse a line feed, taking the first IPv4 address on each line."""
    lines = _read_lines(Path(path))
    if lines is None:
        return []

    now = utcnow()
    indicators: List[CanonicalIndicator] = []

    for line in lines:
        if not line or line.startswith("#") or line.startswith(";"):
            continue

        match = IPV4_IN_LINE.search(line)
        if not match:
            continue

        _build(
            indicators,
            type=IndicatorType.IPV4,
            value=match.group(1),
            source=source,
            description=f"IP from {source}",
            first_seen=now,
            last_seen=now,
            confidence=TXT_CONFIDENCE,
            tags=[source, "ipv4"],
        )

    return indicators


def map_otx_type(otx_type: str, value: str) -> IndicatorType:
    """
    Map an OTX indicator type onto the canonical vocabulary.

    Any hash-like type becomes md5 unless the value's length says sha1
    or sha256.
    """
    otx_type = (otx_type or "").lower()
    if otx_type in OTX_TYPE_MAP:
        return OTX_TYPE_MAP[otx_type]
    if "hash" in otx_type:
        digest = hash_type(value)
        if digest in (IndicatorType.SHA1, IndicatorType.SHA256):
            return digest
        return IndicatorType.MD5
    return IndicatorType.UNKNOWN


def parse_otx_pulse(path: PathLike) -> List[CanonicalIndicator]:
    """Parse one staged OTX pulse."""
    pulse = _read_json(Path(path))
    if not isinstance(pulse, dict):
        return []

    indicators: List[CanonicalIndicator] = []
    pulse_tags = [str(t) for t in pulse.get("tags") or []] or ["otx"]

    for ind in pulse.get("indicators") or []:
        if not isinstance(ind, dict):
            continue
        value = _first(ind, OTX_VALUE_KEYS)
        if not value:
            continue

        _build(
            indicators,
            type=map_otx_type(ind.get("type", ""), str(value)),
            value=str(value),
            source="OTX",
            description=pulse.get("name") or ind.get("description") or "OTX Indicator",
            first_seen=_parse_time(ind.get("created") or pulse.get("created")),
            last_seen=_parse_time(ind.get("modified") or pulse.get("modified")),
            confidence=ind.get("confidence") or OTX_DEFAULT_CONFIDENCE,
            tags=pulse_tags,
        )

    return indicators


def parse_phishstats_file(path: PathLike) -> List[CanonicalIndicator]:
    """Parse a staged PhishStats page into url and hosting-IP indicators."""
    content = _read_json(Path(path))
    if content is None:
        return []
    entries = content if isinstance(content, list) else [content]

    now = utcnow()
    indicators: List[CanonicalIndicator] = []

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        seen = _parse_time(entry.get("date")) or now
        url = _first(entry, PHISHSTATS_URL_KEYS)
        title = entry.get("title")

        if url:
            _build(
                indicators,
                type=IndicatorType.URL,
                value=str(url),
                source="PhishStats",
                description=title or "Phishing URL from PhishStats",
                first_seen=seen,
                last_seen=now,
                confidence=PHISHSTATS_URL_CONFIDENCE,
                tags=["phishstats", "phishing", "url"],
            )

        if entry.get("ip"):
            _build(
                indicators,
                type=IndicatorType.IPV4,
                value=str(entry["ip"]),
                source="PhishStats",
                description=f"IP hosting phishing site: {title or url}",
                first_seen=seen,
                last_seen=now,
                confidence=PHISHSTATS_IP_CONFIDENCE,
                tags=["phishstats", "phishing", "ipv4"],
            )

    return indicators


def parse_bazaar_yara_file(path: PathLike) -> List[CanonicalIndicator]:
    """Parse MalwareBazaar YARA statistics into hash indicators."""
    content = _read_json(Path(path))
    if content is None:
        return []
    data = content.get("data", content) if isinstance(content, dict) else content
    if not isinstance(data, list):
        return []

    now = utcnow()
    indicators: List[CanonicalIndicator] = []

    for item in data:
        if not isinstance(item, dict):
            continue
        digest = _first(item, HASH_KEYS["sha256"]) or _first(item, HASH_KEYS["md5"])
        if not digest:
            continue
        rule = item.get("yara_rule") or "unknown"
        ioc_type = hash_type(str(digest))

        _build(
            indicators,
            type=ioc_type,
            value=str(digest),
            source="BazaarYARA",
            description=f"Malware sample - YARA: {rule}",
            first_seen=_parse_time(item.get("first_seen")) or now,
            last_seen=now,
            confidence=BAZAAR_YARA_CONFIDENCE,
            tags=["bazaar", "malware", "hash", str(rule)],
        )

    return indicators


def parse_malshare_file(path: PathLike, source: str = "MalShare") -> List[CanonicalIndicator]:
    """
    Parse a MalShare getlist payload (JSON list of hash records or one
    hash per line).
    """
    path = Path(path)
    now = utcnow()
    values: List[str] = []

    if path.suffix == ".json":
        content = _read_json(path)
        if content is None:
            return []
        records = content if isinstance(content, list) else [content]
        for record in records:
            if isinstance(record, dict):
                digest = (
                    _first(record, HASH_KEYS["sha256"])
                    or _first(record, HASH_KEYS["sha1"])
                    or _first(record, HASH_KEYS["md5"])
                )
                if digest:
                    values.append(str(digest))
            elif isinstance(record, str):
                values.append(record)
    else:
        lines = _read_lines(path)
        if lines is None:
            return []
        values = [line for line in lines if line and not line.startswith("#")]

    indicators: List[CanonicalIndicator] = []
    for value in values:
        ioc_type = hash_type(value.strip())
        if ioc_type == IndicatorType.UNKNOWN:
            continue
        _build(
            indicators,
            type=ioc_type,
            value=value.strip(),
            source=source,
            description=f"Malware sample from {source}",
            first_seen=now,
            last_seen=now,
            confidence=MALSHARE_CONFIDENCE,
            tags=[source, "malware", ioc_type.value],
        )
    return indicators


@dataclass(frozen=True)
class FeedFile:
    """A staged feed file and the parser that reads it."""
    file: str
    source: str
    parser: Callable[..., List[CanonicalIndicator]]
    takes_source: bool = True

    def parse(self, path: PathLike) -> List[CanonicalIndicator]:
        if self.takes_source:
            return self.parser(path, self.source)
        return self.parser(path)


FEED_FILES: List[FeedFile] = [
    FeedFile("urlhaus_online.csv", "URLhaus", parse_csv_feed),
    FeedFile("threatfox_full.csv", "ThreatFox", parse_csv_feed),
    FeedFile("phishtank.csv", "PhishTank", parse_csv_feed),
    FeedFile("spamhaus.txt", "Spamhaus", parse_txt_feed),
    FeedFile("emerging_threats.txt", "EmergingThreats", parse_txt_feed),
    FeedFile("bazaar_recent.csv", "Bazaar", parse_csv_feed),
    FeedFile("ciarmy.txt", "CIArmy", parse_txt_feed),
    FeedFile("dshield_openioc.txt", "DShieldOpenIOC", parse_txt_feed),
    FeedFile("dshield_threatfeeds.txt", "DShieldThreatFeeds", parse_txt_feed),
    FeedFile("malshare_getlist.txt", "MalShare", parse_malshare_file),
    FeedFile("malshare_getlist.json", "MalShare", parse_malshare_file),
    FeedFile("bazaar_yara_stats.json", "BazaarYARA", parse_bazaar_yara_file, takes_source=False),
]

# (file prefix, source name, parser) for feeds staged as many files
GLOB_FEEDS: List[Tuple[str, str, Callable[[PathLike], List[CanonicalIndicator]]]] = [
    ("otx_pulse_", "OTX", parse_otx_pulse),
    ("phishstats_", "PhishStats", parse_phishstats_file),
]


def iter_feed_files(feeds_dir: PathLike) -> Iterator[Tuple[str, Path, Callable[[Path], List[CanonicalIndicator]]]]:
    """
    Yield (source name, path, parse callable) for every staged feed file.

    Single-file feeds come first in FEED_FILES order, then glob feeds
    sorted by file name.
    """
    feeds_dir = Path(feeds_dir)
    if not feeds_dir.is_dir():
        logger.warning(f"Feeds directory does not exist: {feeds_dir}")
        return

    for feed in FEED_FILES:
        path = feeds_dir / feed.file
        if path.exists():
            yield feed.source, path, feed.parse
        else:
            logger.debug(f"File not found: {feed.file}")

    for prefix, source, parser in GLOB_FEEDS:
        matches = sorted(feeds_dir.glob(f"{prefix}*.json"))
        logger.info(f"Found {len(matches)} {source} files")
        for path in matches:
            yield source, path, parser
