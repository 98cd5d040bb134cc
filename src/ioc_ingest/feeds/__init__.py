"""
Feed retrieval and parsing.

Source catalog, HTTP retry client, per-format handlers that stage raw
payloads, and parsers that turn staged files into canonical indicators.
"""

from ioc_ingest.feeds.catalog import build_catalog, get_source, sources_for_tier
from ioc_ingest.feeds.handlers import FormatHandler, build_handlers, handler_for
from ioc_ingest.feeds.http import FeedClient
from ioc_ingest.feeds.parsers import iter_feed_files

__all__ = [
    "build_catalog",
    "get_source",
    "sources_for_tier",
    "FormatHandler",
    "build_handlers",
    "handler_for",
    "FeedClient",
    "iter_feed_files",
]
