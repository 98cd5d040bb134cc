"""
Ingestion service.

Wires the scheduler, parsers, upsert engine and normalizer together and
exposes the entry points used by the CLI and any HTTP front end: tier
cycles, the full ingestion cycle, manual fetch/normalize, status and
statistics.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from ioc_ingest.core.config import AppConfig, get_config
from ioc_ingest.core.errors import IngestError
from ioc_ingest.core.models import FetchResult, FetchStatus, ScheduleTier
from ioc_ingest.feeds.catalog import build_catalog
from ioc_ingest.feeds.handlers import build_handlers
from ioc_ingest.feeds.http import FeedClient
from ioc_ingest.feeds.parsers import iter_feed_files
from ioc_ingest.normalize.runner import NormalizeRunner
from ioc_ingest.pipeline.scheduler import FetchScheduler, TierScheduler
from ioc_ingest.pipeline.severity import severity_stats
from ioc_ingest.pipeline.store import IndicatorStore
from ioc_ingest.pipeline.tracking import FetchTrackingStore
from ioc_ingest.pipeline.upsert import UpsertEngine

logger = logging.getLogger(__name__)


class IngestionService:
    """
    Main ingestion service.

    Orchestrates fetch cycles, feed processing and normalization.
    """

    def __init__(
        self,
        config: AppConfig,
        scheduler: FetchScheduler,
        engine: UpsertEngine,
        normalizer: NormalizeRunner,
        store: IndicatorStore
    ):
        self.config = config
        self.scheduler = scheduler
        self.engine = engine
        self.normalizer = normalizer
        self.store = store

    @classmethod
    def from_config(
        cls,
        config: Optional[AppConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ) -> "IngestionService":
        """
        Build the service and its collaborators from configuration.

        Args:
            config: Application configuration (defaults to get_config())
            session: HTTP session for feed downloads
            sleep: Sleep function shared by every component
        """
        config = config or get_config()
        feeds_path = config.ingest.feeds_path

        catalog = build_catalog(config)
        client = FeedClient(config.ingest, session=session, sleep=sleep)
        handlers = build_handlers(catalog, client, feeds_path, sleep, paging=config.phishstats)
        scheduler = FetchScheduler(
            catalog,
            FetchTrackingStore.in_directory(feeds_path),
            handlers,
            config.ingest,
            sleep=sleep,
        )
        store = IndicatorStore(config.store.path)
        engine = UpsertEngine(store, sleep=sleep)
        normalizer = NormalizeRunner(config.normalize)

        return cls(config, scheduler, engine, normalizer, store)

    def tier_scheduler(self, sleep: Callable[[float], None] = time.sleep) -> TierScheduler:
        """Cron loop that runs run_tier for each scheduled tier."""
        return TierScheduler(
            self.run_tier,
            self.config.schedule,
            self.scheduler.catalog,
            sleep=sleep,
        )

    def process_feeds(self) -> Dict[str, Any]:
        """
        Parse every staged feed file and upsert its indicators.

        A failure on one feed is recorded under its source name and the
        next feed proceeds.

        Returns:
            Totals plus per-source results
        """
        feeds_path = self.config.ingest.feeds_path
        logger.info(f"[ProcessFeeds] Starting to process feeds from: {feeds_path}")

        stats: Dict[str, Any] = {
            "total_created": 0,
            "total_updated": 0,
            "total_processed": 0,
            "sources": {},
        }

        for source, path, parse in iter_feed_files(feeds_path):
            logger.info(f"[ProcessFeeds] Processing {source} ({path.name})...")
            try:
                indicators = parse(path)
                logger.info(f"[ProcessFeeds] Parsed {len(indicators)} indicators from {path.name}")
                if not indicators:
                    continue
                result = self.engine.upsert(indicators)
            except (IngestError, OSError, ValueError) as e:
                logger.error(f"[ProcessFeeds] Error processing {source} ({path.name}): {e}")
                stats["sources"][source] = {"error": str(e)}
                continue

            stats["total_created"] += result.created
            stats["total_updated"] += result.updated
            stats["total_processed"] += result.total

            entry = stats["sources"].setdefault(source, {"created": 0, "updated": 0, "total": 0})
            if "error" not in entry:
                entry["created"] += result.created
                entry["updated"] += result.updated
                entry["total"] += result.total

            logger.info(f"[ProcessFeeds] {source}: {result.created} new, {result.updated} updated")

        processed = stats["total_processed"]
        dedup_rate = (stats["total_updated"] / processed * 100) if processed else 0.0
        stats["dedup_rate"] = round(dedup_rate, 1)

        logger.info(
            f"[ProcessFeeds] Summary: {stats['total_created']} new, "
            f"{stats['total_updated']} updated, {processed} processed, "
            f"deduplication rate {stats['dedup_rate']}%"
        )
        return stats

    def _normalize_if_needed(self) -> Optional[Dict[str, Any]]:
        if not self.config.normalize.run_jobs:
            return None
        if not self.normalizer.has_new_files():
            logger.info("[Ingest] No new files to normalize")
            return None
        logger.info("[Ingest] Triggering normalization for newly fetched data...")
        return self.normalizer.run_all()

    def run_tier(self, tier: ScheduleTier) -> Dict[str, Any]:
        """Fetch one tier, process staged feeds, then normalize if needed."""
        tier = ScheduleTier(tier)
        logger.info(f"[Ingest] Running {tier.value} tier")

        summary = self.scheduler.run_cycle(tier)
        processed = self.process_feeds()
        normalized = self._normalize_if_needed()

        return {
            "fetch": summary.model_dump(mode="json"),
            "process": processed,
            "normalize": normalized,
        }

    def trigger_ingestion(self) -> Dict[str, Any]:
        """
        Full ingestion cycle over every source.

        When ingestion is disabled globally only the all-skipped fetch
        summary is returned.
        """
        summary = self.scheduler.run_all()
        if not self.config.ingest.sources_enabled:
            return {"fetch": summary.model_dump(mode="json"), "process": None, "normalize": None}

        logger.info("[Ingest] Starting IOC feeds ingestion...")
        processed = self.process_feeds()
        normalized = self._normalize_if_needed()
        logger.info("[Ingest] IOC feeds ingestion complete")

        return {
            "fetch": summary.model_dump(mode="json"),
            "process": processed,
            "normalize": normalized,
        }

    def manual_fetch(self, key: str) -> FetchResult:
        """
        Fetch one source now, bypassing its TTL.

        Raises:
            UnknownSourceError: No source has this key
            SourceDisabledError: The source is disabled
        """
        result = self.scheduler.force_fetch(key)
        if result.status == FetchStatus.SUCCESS:
            self.process_feeds()
            self._normalize_if_needed()
        return result

    def manual_normalize(self, task: str) -> Dict[str, Any]:
        return self.normalizer.run(task)

    def get_fetch_status(self) -> Dict[str, Any]:
        return self.scheduler.get_fetch_status()

    def get_stats(self) -> Dict[str, Any]:
        """Indicator store statistics with severity averages."""
        stats = self.store.stats()
        severity = severity_stats(self.store.find_all())
        stats["average_score"] = severity["average_score"]
        stats["average_confidence"] = severity["average_confidence"]
        return stats
