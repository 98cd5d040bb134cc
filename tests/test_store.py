"""
Tests for the indicator store and the upsert engine.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from ioc_ingest.core.errors import StoreError
from ioc_ingest.core.models import CanonicalIndicator, Severity
from ioc_ingest.pipeline.store import IndicatorStore
from ioc_ingest.pipeline.upsert import UpsertEngine, fingerprint

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return IndicatorStore(str(tmp_path / "indicators.db"))


@pytest.fixture
def engine(store, sleeps):
    return UpsertEngine(store, sleep=sleeps.append, clock=lambda: NOW)


def make_indicator(value="192.0.2.1", source="Spamhaus", **fields):
    fields.setdefault("type", "ipv4")
    return CanonicalIndicator(value=value, source=source, **fields)


class TestFingerprint:
    """Test dedup keys."""

    def test_deterministic(self):
        assert fingerprint("ipv4", "192.0.2.1", "Spamhaus") == fingerprint("ipv4", "192.0.2.1", "Spamhaus")
        assert len(fingerprint("ipv4", "192.0.2.1", "Spamhaus")) == 64

    def test_distinct_triples(self):
        base = fingerprint("ipv4", "192.0.2.1", "Spamhaus")
        assert fingerprint("ipv4", "192.0.2.1", "CIArmy") != base
        assert fingerprint("domain", "192.0.2.1", "Spamhaus") != base
        assert fingerprint("ipv4", "192.0.2.2", "Spamhaus") != base

    def test_missing_source_is_empty(self):
        assert fingerprint("ipv4", "192.0.2.1", None) == fingerprint("ipv4", "192.0.2.1", "")


class TestUpsertEngine:
    """Test batch upserts."""

    def test_same_indicator_twice(self, engine, store):
        first = engine.upsert([make_indicator()])
        second = engine.upsert([make_indicator()])

        assert (first.created, first.updated) == (1, 0)
        assert (second.created, second.updated) == (0, 1)
        assert store.count() == 1
        row = store.find_one(fingerprint("ipv4", "192.0.2.1", "Spamhaus"))
        assert row.observed_count == 2

    def test_batching(self, engine, sleeps):
        records = [make_indicator(value=f"10.0.{i // 250}.{i % 250}") for i in range(1200)]

        result = engine.upsert(records)

        assert result.batches == 3
        assert result.created + result.updated == result.total == 1200
        assert sleeps == [0.05, 0.05]

    def test_invalid_records_dropped(self, engine, store):
        result = engine.upsert([
            {"type": "ipv4", "value": "192.0.2.1", "source": "Spamhaus"},
            {"type": "ipv4", "value": ""},
            {"type": "not-a-type", "value": "x"},
            {"type": "url", "value": "http://a.example.test", "confidence": 150},
        ])
        assert result.total == 1
        assert store.count() == 1

    def test_duplicates_within_batch_collapsed(self, engine, store):
        result = engine.upsert([
            make_indicator(description="first"),
            make_indicator(description="second"),
        ])

        assert result.created == 1
        assert result.total == 1
        row = store.find_one(fingerprint("ipv4", "192.0.2.1", "Spamhaus"))
        assert row.observed_count == 1
        assert row.description == "second"

    def test_classification_stored(self, engine, store):
        engine.upsert([CanonicalIndicator(
            type="url",
            value="http://panel.example.test/",
            source="urlhaus",
            description="ransomware C2 panel",
        )])
        row = store.find_all()[0]
        assert row.severity == Severity.CRITICAL
        assert row.raw["value"] == "http://panel.example.test/"

    def test_last_seen_never_decreases(self, engine, store):
        later = NOW + timedelta(days=10)
        engine.upsert([make_indicator(last_seen=later)])
        engine.upsert([make_indicator(last_seen=NOW - timedelta(days=10))])

        row = store.find_all()[0]
        assert row.last_seen == later

    def test_store_failure_raises(self, sleeps):
        store = MagicMock()
        store.existing_counts.side_effect = RuntimeError("disk I/O error")
        engine = UpsertEngine(store, sleep=sleeps.append)

        with pytest.raises(StoreError):
            engine.upsert([make_indicator()])

        store.upsert_batch.assert_not_called()

    def test_failure_aborts_remaining_batches(self, sleeps):
        store = MagicMock()
        store.existing_counts.return_value = {}
        store.upsert_batch.side_effect = [None, StoreError("database is locked")]
        engine = UpsertEngine(store, batch_size=2, sleep=sleeps.append)

        records = [make_indicator(value=f"192.0.2.{i}") for i in range(6)]
        with pytest.raises(StoreError):
            engine.upsert(records)

        assert store.upsert_batch.call_count == 2


class TestIndicatorStore:
    """Test store queries."""

    def test_find_all_filters(self, engine, store):
        engine.upsert([
            make_indicator(value="192.0.2.1", source="Spamhaus"),
            make_indicator(value="192.0.2.2", source="CIArmy"),
            CanonicalIndicator(type="url", value="http://a.example.test", source="URLhaus"),
        ])

        assert store.count(source="CIArmy") == 1
        assert store.count(type="url") == 1
        assert store.count(fingerprints=[]) == 0
        assert len(store.find_all(limit=2)) == 2
        fps = [fingerprint("ipv4", "192.0.2.1", "Spamhaus")]
        assert [r.value for r in store.find_all(fingerprints=fps)] == ["192.0.2.1"]

    def test_large_fingerprint_lookup(self, engine, store):
        engine.upsert([
            make_indicator(value="192.0.2.1", last_seen=NOW - timedelta(days=1)),
            make_indicator(value="192.0.2.2", last_seen=NOW),
        ])
        unknown = [fingerprint("ipv4", f"10.{i // 256}.{i % 256}.1", "Nowhere") for i in range(40000)]
        fps = (
            [fingerprint("ipv4", "192.0.2.1", "Spamhaus")]
            + unknown
            + [fingerprint("ipv4", "192.0.2.2", "Spamhaus")]
        )

        assert store.count(fingerprints=fps) == 2
        assert [r.value for r in store.find_all(fingerprints=fps)] == ["192.0.2.2", "192.0.2.1"]
        assert [r.value for r in store.find_all(fingerprints=fps, limit=1)] == ["192.0.2.2"]

    def test_stats(self, engine, store):
        engine.upsert([
            make_indicator(value="192.0.2.1"),
            make_indicator(value="192.0.2.2"),
            CanonicalIndicator(type="url", value="http://a.example.test", source="URLhaus"),
        ])

        stats = store.stats()

        assert stats["total"] == 3
        assert stats["by_source"] == {"Spamhaus": 2, "URLhaus": 1}
        assert stats["by_type"]["ipv4"] == 2

    def test_find_one_missing(self, store):
        assert store.find_one("0" * 64) is None

    def test_to_dict(self, engine, store):
        engine.upsert([make_indicator()])
        data = store.find_all()[0].to_dict()
        assert data["severity"] in {s.value for s in Severity}
        assert data["observed_count"] == 1
