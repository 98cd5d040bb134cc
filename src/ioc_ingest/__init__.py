"""
IOC Ingest - Threat Intelligence Feed Ingestion

Pulls Indicators of Compromise from external threat-intelligence feeds,
normalizes them into canonical records, scores severity and confidence,
deduplicates them into an indicator store and consolidates staged feed
files into merged artifacts.

Main modules:
- core: configuration, data models, exceptions
- feeds: source catalog, HTTP retry client, format handlers, feed parsers
- pipeline: tracking stores, severity classifier, upsert engine, scheduler
- normalize: staged-file mergers and the normalization runner
- cli: iocctl operational CLI
"""

__version__ = "0.1.0"
__author__ = "Orion Sentinel Team"

from ioc_ingest.core.config import get_config

__all__ = ["__version__", "__author__", "get_config"]
