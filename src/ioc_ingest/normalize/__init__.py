"""
Normalization of staged feed files into consolidated artifacts.
"""

from ioc_ingest.normalize.mergers import (
    IPListMerger,
    Merger,
    PhishingMerger,
    SoftwareMerger,
    ThreatIntelMerger,
)
from ioc_ingest.normalize.runner import NormalizeRunner

__all__ = [
    "Merger",
    "IPListMerger",
    "ThreatIntelMerger",
    "PhishingMerger",
    "SoftwareMerger",
    "NormalizeRunner",
]
