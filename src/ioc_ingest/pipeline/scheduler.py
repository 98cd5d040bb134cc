"""
Fetch scheduling.

FetchScheduler runs sources through their format handlers with the
eligibility pre-checks (enabled, URL configured, TTL) and records each
attempt in the fetch tracking store. TierScheduler drives tier cycles
from cron expressions.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from ioc_ingest.core.config import IngestConfig, ScheduleConfig
from ioc_ingest.core.errors import SourceDisabledError
from ioc_ingest.core.models import (
    CycleSummary,
    FetchResult,
    FetchStatus,
    ScheduleTier,
    SourceDescriptor,
    ensure_utc,
    utcnow,
)
from ioc_ingest.feeds.catalog import get_source, sources_for_tier
from ioc_ingest.feeds.handlers import FormatHandler
from ioc_ingest.pipeline.tracking import FetchTrackingStore

logger = logging.getLogger(__name__)


class FetchScheduler:
    """
    Sequential fetcher for catalog sources.

    Sources run one at a time with a fixed delay between network
    attempts. Each attempted source gets exactly one tracking write;
    pre-check skips leave the previous record untouched.
    """

    def __init__(
        self,
        catalog: List[SourceDescriptor],
        tracking: FetchTrackingStore,
        handlers: Dict[str, FormatHandler],
        config: Optional[IngestConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize scheduler.

        Args:
            catalog: Source descriptors
            tracking: Fetch tracking store
            handlers: Handler instance per source key
            config: Ingestion configuration (global flag, inter-source delay)
            sleep: Sleep function
            clock: Returns the current UTC time
        """
        self.catalog = catalog
        self.tracking = tracking
        self.handlers = handlers
        self.config = config or IngestConfig()
        self.sleep = sleep
        self.clock = clock

    def _skipped(self, source: SourceDescriptor, reason: str) -> FetchResult:
        return FetchResult(
            source=source.key,
            status=FetchStatus.SKIPPED,
            reason=reason,
            timestamp=self.clock(),
        )

    def fetch_source(self, source: SourceDescriptor) -> FetchResult:
        """
        Fetch one source if it is eligible.

        Args:
            source: Source to fetch

        Returns:
            FetchResult (skipped, success or failed)
        """
        if not source.enabled:
            logger.info(f"[{source.name}] Skipped (disabled)")
            return self._skipped(source, "disabled")

        if not source.url:
            logger.error(f"[{source.name}] Skipped (IOC_URL_{source.key.upper()} not set)")
            return self._skipped(source, "url_not_configured")

        if not self.tracking.should_fetch(source, self.clock()):
            return self._skipped(source, "already_fetched")

        logger.info(f"[{source.name}] URL: {source.url}")
        result = self.handlers[source.key].run(source)
        self.tracking.record(source, result)
        return result

    def _run_sources(self, sources: List[SourceDescriptor], label: str) -> CycleSummary:
        logger.info(f"[FetchScheduler] {label} cycle started ({len(sources)} sources)")
        start = time.monotonic()
        results: List[FetchResult] = []

        for index, source in enumerate(sources):
            result = self.fetch_source(source)
            results.append(result)

            attempted = result.status != FetchStatus.SKIPPED
            if attempted and index < len(sources) - 1 and self.config.request_delay_seconds > 0:
                self.sleep(self.config.request_delay_seconds)

        summary = CycleSummary.from_results(results, time.monotonic() - start)
        logger.info(
            f"[FetchScheduler] {label} cycle complete in {summary.duration}s: "
            f"{summary.successful} success, {summary.failed} failed, "
            f"{summary.skipped} skipped of {summary.total}"
        )
        return summary

    def _disabled_summary(self, sources: List[SourceDescriptor]) -> CycleSummary:
        logger.info("[FetchScheduler] IOC sources disabled globally (IOC_SOURCES_ENABLED=false)")
        results = [self._skipped(s, "ingestion_disabled") for s in sources]
        return CycleSummary.from_results(results, 0.0)

    def run_cycle(self, tier: ScheduleTier) -> CycleSummary:
        """Fetch every enabled source of one tier."""
        tier = ScheduleTier(tier)
        sources = sources_for_tier(self.catalog, tier)
        if not self.config.sources_enabled:
            return self._disabled_summary(sources)
        return self._run_sources(sources, tier.value)

    def run_all(self) -> CycleSummary:
        """Full cycle over every catalog source, in catalog order."""
        if not self.config.sources_enabled:
            return self._disabled_summary(self.catalog)
        return self._run_sources(self.catalog, "full")

    def force_fetch(self, key: str) -> FetchResult:
        """
        Fetch a source now, ignoring its TTL.

        Raises:
            UnknownSourceError: No source has this key
            SourceDisabledError: The source is disabled
        """
        source = get_source(self.catalog, key)
        if not source.enabled:
            raise SourceDisabledError(f"Source is disabled: {key}")

        logger.info(f"[ManualFetch] Forcing fetch for {source.name}...")
        self.tracking.delete(source.key)
        return self.fetch_source(source)

    def get_fetch_status(self) -> Dict[str, Any]:
        """Per-source tracking status with next eligible fetch time."""
        records = self.tracking.all()
        sources = []

        for source in self.catalog:
            record = records.get(source.key)
            sources.append({
                "name": source.name,
                "key": source.key,
                "enabled": source.enabled,
                "schedule": source.schedule.value,
                "last_fetch": record.timestamp.isoformat() if record else None,
                "status": record.status.value if record else "never_fetched",
                "count": record.count if record else 0,
                "error": record.error if record else None,
                "ttl_seconds": int(source.ttl.total_seconds()),
                "next_fetch": (record.timestamp + source.ttl).isoformat() if record else None,
            })

        return {"last_update": self.clock().isoformat(), "sources": sources}


class TierScheduler:
    """
    Cron loop over schedule tiers.

    Each tier with at least one enabled source gets a croniter; the loop
    sleeps until the earliest due tier, runs it, and recomputes. Tiers run
    sequentially in this process. A failing tier run is logged and the
    loop continues.
    """

    def __init__(
        self,
        run_tier: Callable[[ScheduleTier], Any],
        schedule: ScheduleConfig,
        catalog: List[SourceDescriptor],
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        self.run_tier = run_tier
        self.sleep = sleep
        self.clock = clock

        expressions = {
            ScheduleTier.MONTHLY: schedule.monthly,
            ScheduleTier.EVERY_48_HOURS: schedule.every_48_hours,
            ScheduleTier.DAILY: schedule.daily,
        }

        now = ensure_utc(self.clock())
        self.next_runs: Dict[ScheduleTier, datetime] = {}
        self._iters: Dict[ScheduleTier, croniter] = {}
        for tier, expression in expressions.items():
            if not sources_for_tier(catalog, tier):
                logger.info(f"[TierScheduler] {tier.value}: no enabled sources, not scheduled")
                continue
            self._iters[tier] = croniter(expression, now)
            self.next_runs[tier] = self._iters[tier].get_next(datetime)
            logger.info(
                f"[TierScheduler] {tier.value}: '{expression}', "
                f"next run {self.next_runs[tier].isoformat()}"
            )

    def run_pending(self, now: Optional[datetime] = None) -> List[ScheduleTier]:
        """
        Run every tier that is due at `now`, then advance its schedule.

        Returns:
            Tiers that ran
        """
        now = ensure_utc(now or self.clock())
        ran = []

        for tier in sorted(self.next_runs, key=lambda t: self.next_runs[t]):
            if self.next_runs[tier] > now:
                continue

            logger.info(f"[TierScheduler] Running {tier.value} tier")
            try:
                self.run_tier(tier)
            except Exception as e:
                logger.error(f"[TierScheduler] {tier.value} tier failed: {e}")
            ran.append(tier)

            next_run = self._iters[tier].get_next(datetime)
            while next_run <= now:
                next_run = self._iters[tier].get_next(datetime)
            self.next_runs[tier] = next_run

        return ran

    def seconds_until_next(self, now: Optional[datetime] = None) -> Optional[float]:
        if not self.next_runs:
            return None
        now = ensure_utc(now or self.clock())
        return max(0.0, (min(self.next_runs.values()) - now).total_seconds())

    def run_forever(self, max_iterations: Optional[int] = None) -> None:
        """Block, running tiers as they come due."""
        if not self.next_runs:
            logger.warning("[TierScheduler] No tiers scheduled, nothing to do")
            return

        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            wait = self.seconds_until_next()
            if wait:
                self.sleep(wait)
            self.run_pending()
            iterations += 1
