"""
Source Catalog

Static descriptors for every supported threat-intelligence feed. Enable
flags, URLs and API keys come from configuration; everything else
(staging name, retrieval strategy, tier, TTL) is fixed per source.
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from ioc_ingest.core.config import AppConfig
from ioc_ingest.core.errors import UnknownSourceError
from ioc_ingest.core.models import (
    HandlerType,
    PayloadType,
    ScheduleTier,
    SourceDescriptor,
)

logger = logging.getLogger(__name__)

MONTH = timedelta(days=30)
TWO_DAYS = timedelta(hours=48)
DAY = timedelta(hours=24)

PHISHTANK_HEADERS = {
    "Accept": "*/*",
    "Accept-Encoding": "gzip, deflate",
    "Referer": "https://www.phishtank.com/",
}

# key -> (name, payload type, staging filename, handler, tier, ttl)
SOURCE_TABLE = [
    ("urlhaus", "URLhaus", PayloadType.CSV, "urlhaus_online",
     HandlerType.PLAIN, ScheduleTier.MONTHLY, MONTH),
    ("ciarmy", "CI Army", PayloadType.TXT, "ciarmy",
     HandlerType.PLAIN, ScheduleTier.MONTHLY, MONTH),
    ("threatfox", "ThreatFox", PayloadType.CSV, "threatfox_full",
     HandlerType.ZIP, ScheduleTier.EVERY_48_HOURS, TWO_DAYS),
    ("phishtank", "PhishTank", PayloadType.CSV, "phishtank",
     HandlerType.GZIP, ScheduleTier.DAILY, DAY),
    ("spamhaus", "Spamhaus", PayloadType.TXT, "spamhaus",
     HandlerType.PLAIN, ScheduleTier.DAILY, DAY),
    ("emerging_threats", "Emerging Threats", PayloadType.TXT, "emerging_threats",
     HandlerType.PLAIN, ScheduleTier.DAILY, DAY),
    ("otx", "OTX", PayloadType.JSON, "otx_pulse",
     HandlerType.OTX_API, ScheduleTier.DAILY, DAY),
    ("bazaar", "Bazaar", PayloadType.CSV, "bazaar_recent",
     HandlerType.PLAIN, ScheduleTier.DAILY, DAY),
    ("bazaar_yara", "Bazaar YARA", PayloadType.JSON, "bazaar_yara_stats",
     HandlerType.PLAIN, ScheduleTier.DAILY, DAY),
    ("dshield_openioc", "DShield OpenIOC", PayloadType.TXT, "dshield_openioc",
     HandlerType.XML_EXTRACT, ScheduleTier.DAILY, DAY),
    ("dshield_threatfeeds", "DShield ThreatFeeds", PayloadType.TXT, "dshield_threatfeeds",
     HandlerType.XML_EXTRACT, ScheduleTier.DAILY, DAY),
    ("malshare", "MalShare", PayloadType.TXT, "malshare_getlist",
     HandlerType.MALSHARE_API, ScheduleTier.DAILY, DAY),
    ("phishstats", "PhishStats", PayloadType.JSON, "phishstats",
     HandlerType.PHISHSTATS_API, ScheduleTier.DAILY, DAY),
]

EXTRA_HEADERS: Dict[str, Dict[str, str]] = {
    "phishtank": PHISHTANK_HEADERS,
}


def _api_key_for(key: str, config: AppConfig) -> Optional[str]:
    if key == "otx":
        return config.api_keys.otx_api_key
    if key == "malshare":
        return config.api_keys.malshare_api_key
    return None


def build_catalog(config: AppConfig) -> List[SourceDescriptor]:
    """
    Build the source catalog from configuration.

    Args:
        config: Application configuration

    Returns:
        List of SourceDescriptor, in catalog order

    Raises:
        ValueError: If two sources share a key
    """
    catalog: List[SourceDescriptor] = []
    seen = set()

    for key, name, payload_type, filename, handler, tier, ttl in SOURCE_TABLE:
        if key in seen:
            raise ValueError(f"Duplicate source key in catalog: {key}")
        seen.add(key)

        catalog.append(SourceDescriptor(
            name=name,
            key=key,
            enabled=getattr(config.sources, key),
            url=getattr(config.urls, key),
            type=payload_type,
            filename=filename,
            handler=handler,
            schedule=tier,
            ttl=ttl,
            api_key=_api_key_for(key, config),
            headers=dict(EXTRA_HEADERS.get(key, {})),
        ))

    enabled = sum(1 for s in catalog if s.enabled)
    logger.debug(f"Built source catalog: {len(catalog)} sources, {enabled} enabled")
    return catalog


def get_source(catalog: List[SourceDescriptor], key: str) -> SourceDescriptor:
    """Look up a source by key, raising UnknownSourceError if absent."""
    for source in catalog:
        if source.key == key:
            return source
    raise UnknownSourceError(key)


def sources_for_tier(
    catalog: List[SourceDescriptor],
    tier: ScheduleTier
) -> List[SourceDescriptor]:
    """Enabled sources scheduled on the given tier."""
    tier = ScheduleTier(tier)
    return [s for s in catalog if s.enabled and s.schedule == tier]
