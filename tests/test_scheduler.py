"""
Tests for the fetch scheduler and the cron tier loop.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from ioc_ingest.core.config import IngestConfig, ScheduleConfig, SourceConfig
from ioc_ingest.core.errors import SourceDisabledError, UnknownSourceError
from ioc_ingest.core.models import FetchResult, FetchStatus, ScheduleTier
from ioc_ingest.feeds.catalog import build_catalog, get_source, sources_for_tier
from ioc_ingest.pipeline.scheduler import FetchScheduler, TierScheduler
from ioc_ingest.pipeline.tracking import FetchTrackingStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def fake_handler(status=FetchStatus.SUCCESS, count=5):
    handler = MagicMock()
    handler.run.side_effect = lambda source: FetchResult(
        source=source.key, status=status, count=count, timestamp=NOW
    )
    return handler


@pytest.fixture
def catalog(app_config):
    return build_catalog(app_config)


@pytest.fixture
def tracking(feeds_dir):
    return FetchTrackingStore.in_directory(feeds_dir)


@pytest.fixture
def handlers(catalog):
    return {source.key: fake_handler() for source in catalog}


@pytest.fixture
def scheduler(catalog, tracking, handlers, sleeps):
    config = IngestConfig(sources_enabled=True, request_delay_seconds=2.0)
    return FetchScheduler(catalog, tracking, handlers, config, sleep=sleeps.append, clock=lambda: NOW)


class TestFetchSource:
    """Test per-source eligibility checks."""

    def test_success_recorded(self, scheduler, catalog, tracking):
        result = scheduler.fetch_source(get_source(catalog, "spamhaus"))
        assert result.status == FetchStatus.SUCCESS
        assert tracking.get("spamhaus").count == 5

    def test_disabled_source_skipped(self, scheduler, catalog, tracking, handlers):
        source = get_source(catalog, "spamhaus").model_copy(update={"enabled": False})
        result = scheduler.fetch_source(source)
        assert result.status == FetchStatus.SKIPPED
        assert result.reason == "disabled"
        handlers["spamhaus"].run.assert_not_called()
        assert tracking.get("spamhaus") is None

    def test_missing_url_skipped(self, scheduler, catalog, tracking):
        source = get_source(catalog, "spamhaus").model_copy(update={"url": None})
        result = scheduler.fetch_source(source)
        assert result.reason == "url_not_configured"
        assert tracking.get("spamhaus") is None

    def test_recent_fetch_skipped(self, scheduler, catalog, tracking, handlers):
        source = get_source(catalog, "spamhaus")
        tracking.record(source, FetchResult(source="spamhaus", status=FetchStatus.SUCCESS,
                                            timestamp=NOW - timedelta(hours=1)))
        result = scheduler.fetch_source(source)
        assert result.reason == "already_fetched"
        handlers["spamhaus"].run.assert_not_called()

    def test_failed_fetch_recorded(self, scheduler, catalog, tracking, handlers):
        handlers["spamhaus"] = fake_handler(status=FetchStatus.FAILED, count=0)
        result = scheduler.fetch_source(get_source(catalog, "spamhaus"))
        assert result.status == FetchStatus.FAILED
        assert tracking.get("spamhaus").status == FetchStatus.FAILED


class TestCycles:
    """Test tier and full cycles."""

    def test_daily_cycle(self, scheduler, catalog, sleeps):
        daily = sources_for_tier(catalog, ScheduleTier.DAILY)

        summary = scheduler.run_cycle(ScheduleTier.DAILY)

        assert summary.total == len(daily)
        assert summary.successful == len(daily)
        assert sleeps == [2.0] * (len(daily) - 1)

    def test_no_delay_after_skipped_sources(self, scheduler, catalog, tracking, sleeps):
        for source in catalog:
            tracking.record(source, FetchResult(source=source.key, status=FetchStatus.SUCCESS, timestamp=NOW))

        summary = scheduler.run_all()

        assert summary.skipped == len(catalog)
        assert sleeps == []

    def test_globally_disabled(self, catalog, tracking, handlers, sleeps):
        scheduler = FetchScheduler(
            catalog, tracking, handlers, IngestConfig(sources_enabled=False),
            sleep=sleeps.append, clock=lambda: NOW,
        )

        summary = scheduler.run_all()

        assert summary.skipped == summary.total == len(catalog)
        assert all(r.reason == "ingestion_disabled" for r in summary.results)
        assert not any(h.run.called for h in handlers.values())

    def test_summary_counts(self, scheduler, catalog, handlers):
        handlers["urlhaus"] = fake_handler(status=FetchStatus.FAILED)
        summary = scheduler.run_cycle(ScheduleTier.MONTHLY)
        assert summary.successful == 1
        assert summary.failed == 1
        assert summary.total == 2


class TestManualFetch:
    """Test force_fetch and status reporting."""

    def test_force_bypasses_ttl(self, scheduler, catalog, tracking, handlers):
        source = get_source(catalog, "spamhaus")
        tracking.record(source, FetchResult(source="spamhaus", status=FetchStatus.SUCCESS, timestamp=NOW))

        result = scheduler.force_fetch("spamhaus")

        assert result.status == FetchStatus.SUCCESS
        handlers["spamhaus"].run.assert_called_once()

    def test_unknown_source(self, scheduler):
        with pytest.raises(UnknownSourceError):
            scheduler.force_fetch("nonexistent")

    def test_disabled_source(self, app_config, tracking, handlers, sleeps):
        app_config.sources = SourceConfig(urlhaus=True)
        scheduler = FetchScheduler(build_catalog(app_config), tracking, handlers, sleep=sleeps.append)
        with pytest.raises(SourceDisabledError):
            scheduler.force_fetch("spamhaus")

    def test_fetch_status(self, scheduler, catalog):
        scheduler.fetch_source(get_source(catalog, "spamhaus"))

        status = scheduler.get_fetch_status()

        by_key = {s["key"]: s for s in status["sources"]}
        assert by_key["urlhaus"]["status"] == "never_fetched"
        assert by_key["urlhaus"]["next_fetch"] is None
        assert by_key["spamhaus"]["status"] == "success"
        assert by_key["spamhaus"]["ttl_seconds"] == 86400
        assert by_key["spamhaus"]["next_fetch"] == (NOW + timedelta(hours=24)).isoformat()


class TestTierScheduler:
    """Test the cron loop."""

    def test_initial_schedule(self, catalog):
        tiers = TierScheduler(MagicMock(), ScheduleConfig(), catalog, clock=lambda: NOW)
        assert tiers.next_runs[ScheduleTier.DAILY] == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert tiers.next_runs[ScheduleTier.EVERY_48_HOURS] == datetime(2024, 1, 3, tzinfo=timezone.utc)
        assert tiers.next_runs[ScheduleTier.MONTHLY] == datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_run_pending(self, catalog):
        run_tier = MagicMock()
        tiers = TierScheduler(run_tier, ScheduleConfig(), catalog, clock=lambda: NOW)

        ran = tiers.run_pending(datetime(2024, 1, 2, 0, 0, 1, tzinfo=timezone.utc))

        assert ran == [ScheduleTier.DAILY]
        run_tier.assert_called_once_with(ScheduleTier.DAILY)
        assert tiers.next_runs[ScheduleTier.DAILY] == datetime(2024, 1, 3, tzinfo=timezone.utc)

    def test_failing_tier_does_not_stop_loop(self, catalog):
        run_tier = MagicMock(side_effect=RuntimeError("boom"))
        tiers = TierScheduler(run_tier, ScheduleConfig(), catalog, clock=lambda: NOW)

        ran = tiers.run_pending(datetime(2024, 1, 3, 0, 0, 1, tzinfo=timezone.utc))

        assert set(ran) == {ScheduleTier.DAILY, ScheduleTier.EVERY_48_HOURS}
        assert run_tier.call_count == 2

    def test_tiers_without_sources_not_scheduled(self, app_config):
        app_config.sources = SourceConfig(spamhaus=True)
        tiers = TierScheduler(MagicMock(), ScheduleConfig(), build_catalog(app_config), clock=lambda: NOW)
        assert list(tiers.next_runs) == [ScheduleTier.DAILY]

    def test_run_forever_sleeps_until_due(self, catalog, sleeps):
        tiers = TierScheduler(MagicMock(), ScheduleConfig(), catalog, sleep=sleeps.append, clock=lambda: NOW)
        tiers.run_forever(max_iterations=1)
        assert sleeps == [12 * 3600.0]
