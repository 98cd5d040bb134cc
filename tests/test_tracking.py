"""
Tests for fetch and normalize tracking stores.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from ioc_ingest.core.models import FetchResult, FetchStatus, NormalizeStatus
from ioc_ingest.feeds.catalog import build_catalog, get_source
from ioc_ingest.pipeline.tracking import FetchTrackingStore, NormalizeTrackingStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def spamhaus(app_config):
    return get_source(build_catalog(app_config), "spamhaus")


@pytest.fixture
def fetch_tracking(feeds_dir):
    return FetchTrackingStore.in_directory(feeds_dir)


class TestFetchTracking:
    """Test TTL decisions and record storage."""

    def test_no_record_fetches(self, fetch_tracking, spamhaus):
        assert fetch_tracking.should_fetch(spamhaus, NOW) is True

    def test_within_ttl_skips(self, fetch_tracking, spamhaus):
        result = FetchResult(source="spamhaus", status=FetchStatus.SUCCESS, count=10,
                             timestamp=NOW - timedelta(hours=23))
        fetch_tracking.record(spamhaus, result)
        assert fetch_tracking.should_fetch(spamhaus, NOW) is False

    def test_expired_ttl_fetches(self, fetch_tracking, spamhaus):
        result = FetchResult(source="spamhaus", status=FetchStatus.SUCCESS,
                             timestamp=NOW - timedelta(hours=25))
        fetch_tracking.record(spamhaus, result)
        assert fetch_tracking.should_fetch(spamhaus, NOW) is True

    def test_failed_attempt_refetches(self, fetch_tracking, spamhaus):
        result = FetchResult(source="spamhaus", status=FetchStatus.FAILED, error="boom",
                             timestamp=NOW - timedelta(minutes=5))
        fetch_tracking.record(spamhaus, result)
        assert fetch_tracking.should_fetch(spamhaus, NOW) is True

    def test_record_round_trip(self, fetch_tracking, spamhaus):
        result = FetchResult(source="spamhaus", status=FetchStatus.SUCCESS, count=42, timestamp=NOW)
        fetch_tracking.record(spamhaus, result)

        record = fetch_tracking.get("spamhaus")
        assert record.name == "Spamhaus"
        assert record.count == 42
        assert record.timestamp == NOW
        assert set(fetch_tracking.all()) == {"spamhaus"}

        fetch_tracking.delete("spamhaus")
        assert fetch_tracking.get("spamhaus") is None

    def test_other_keys_preserved(self, fetch_tracking, spamhaus, app_config):
        ciarmy = get_source(build_catalog(app_config), "ciarmy")
        fetch_tracking.record(spamhaus, FetchResult(source="spamhaus", status=FetchStatus.SUCCESS))
        fetch_tracking.record(ciarmy, FetchResult(source="ciarmy", status=FetchStatus.SUCCESS))
        assert set(fetch_tracking.all()) == {"spamhaus", "ciarmy"}

    def test_corrupt_file_treated_as_empty(self, fetch_tracking, spamhaus):
        fetch_tracking.path.write_text("{ not json")
        assert fetch_tracking.load() == {}
        assert fetch_tracking.should_fetch(spamhaus, NOW) is True

    def test_saved_file_is_json(self, fetch_tracking, spamhaus):
        fetch_tracking.record(spamhaus, FetchResult(source="spamhaus", status=FetchStatus.SUCCESS, timestamp=NOW))
        data = json.loads(fetch_tracking.path.read_text())
        assert data["spamhaus"]["status"] == "success"


class TestNormalizeTracking:
    """Test per-file processing state."""

    @pytest.fixture
    def tracking(self, output_dir):
        return NormalizeTrackingStore.in_directory(output_dir)

    def test_unprocessed_file(self, tracking, feeds_dir):
        path = feeds_dir / "ciarmy.txt"
        path.write_text("192.0.2.1")
        assert tracking.is_processed(path) is False

    def test_marked_file_is_processed(self, tracking, feeds_dir):
        path = feeds_dir / "ciarmy.txt"
        path.write_text("192.0.2.1")
        tracking.mark(path, NormalizeStatus.SUCCESS, 1)
        assert tracking.is_processed(path) is True
        assert tracking.get("ciarmy.txt").count == 1

    def test_changed_file_reprocessed(self, tracking, feeds_dir):
        path = feeds_dir / "ciarmy.txt"
        path.write_text("192.0.2.1")
        tracking.mark(path, NormalizeStatus.SUCCESS, 1)
        path.write_text("192.0.2.1\n192.0.2.2")
        assert tracking.is_processed(path) is False

    def test_failed_file_retried(self, tracking, feeds_dir):
        path = feeds_dir / "ciarmy.txt"
        path.write_text("192.0.2.1")
        tracking.mark(path, NormalizeStatus.FAILED, 0)
        assert tracking.is_processed(path) is False

    def test_reset(self, tracking, feeds_dir):
        path = feeds_dir / "ciarmy.txt"
        path.write_text("192.0.2.1")
        tracking.mark(path, NormalizeStatus.SUCCESS, 1)

        assert tracking.reset() is True
        assert tracking.reset() is False
        assert tracking.is_processed(path) is False
