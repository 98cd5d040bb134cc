"""
Indicator pattern helpers: free-text extraction and single-value typing.
"""

import re
from typing import List

from ioc_ingest.core.models import IndicatorType

IP_RE = re.compile(r"(?:\d{1,3}\.){3}\d{1,3}")
URL_RE = re.compile(r"https?://[^\s'\",]+")
DOMAIN_RE = re.compile(
    r"\b(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}\b",
    re.IGNORECASE
)

IPV4_FULL = re.compile(r"^(?:\d{1,3}\.){3}\d{1,3}$")
URL_PREFIX = re.compile(r"^https?://", re.IGNORECASE)
DOMAIN_FULL = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}$",
    re.IGNORECASE
)
HEX_RE = re.compile(r"^[a-f0-9]+$", re.IGNORECASE)

HASH_LENGTHS = {
    32: IndicatorType.MD5,
    40: IndicatorType.SHA1,
    64: IndicatorType.SHA256,
}


def extract_iocs_from_text(text: str) -> List[str]:
    """
    Pull URLs, IPv4 addresses and domains out of free text.

    Returns:
        Deduplicated, sorted list of matches
    """
    found = set()
    for regex in (URL_RE, IP_RE, DOMAIN_RE):
        for match in regex.findall(text):
            match = match.strip()
            if match:
                found.add(match)
    return sorted(found)


def hash_type(value: str) -> IndicatorType:
    """Hash type implied by a hex digest's length, else UNKNOWN."""
    if not HEX_RE.match(value):
        return IndicatorType.UNKNOWN
    return HASH_LENGTHS.get(len(value), IndicatorType.UNKNOWN)


def detect_ioc_type(value: str) -> IndicatorType:
    """Classify a single indicator value by its shape."""
    value = value.strip()
    if IPV4_FULL.match(value):
        return IndicatorType.IPV4
    if URL_PREFIX.match(value):
        return IndicatorType.URL
    digest = hash_type(value)
    if digest != IndicatorType.UNKNOWN:
        return digest
    if DOMAIN_FULL.match(value):
        return IndicatorType.DOMAIN
    return IndicatorType.UNKNOWN
