"""
Dedup/Upsert Engine

Validates canonical indicators, fingerprints and classifies them, and
writes them to the indicator store in bounded batches. Store failures
abort the remaining batches of the call and surface as StoreError.
"""

import hashlib
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from ioc_ingest.core.errors import StoreError
from ioc_ingest.core.models import (
    CanonicalIndicator,
    PersistedIndicator,
    UpsertResult,
    utcnow,
)
from ioc_ingest.pipeline.severity import classify
from ioc_ingest.pipeline.store import IndicatorStore

logger = logging.getLogger(__name__)

BATCH_SIZE = 500
BATCH_PAUSE_SECONDS = 0.05

RecordLike = Union[CanonicalIndicator, Mapping[str, Any]]


def fingerprint(ioc_type: Any, value: str, source: Optional[str]) -> str:
    """
    Stable dedup key for an indicator.

    Args:
        ioc_type: Indicator type (enum or string)
        value: Indicator value
        source: Source name (None is treated as empty)

    Returns:
        sha256 hex digest of "type|value|source"
    """
    type_value = getattr(ioc_type, "value", ioc_type)
    key = f"{type_value}|{value}|{source or ''}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class UpsertEngine:
    """
    Batch upsert of canonical indicators into an IndicatorStore.

    Intra-batch duplicates (same fingerprint) are collapsed to their last
    occurrence, so each fingerprint is counted and incremented once per
    batch and created + updated == total.
    """

    def __init__(
        self,
        store: IndicatorStore,
        batch_size: int = BATCH_SIZE,
        pause_seconds: float = BATCH_PAUSE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.batch_size = batch_size
        self.pause_seconds = pause_seconds
        self.sleep = sleep
        self.clock = clock

    def validate(self, records: Iterable[RecordLike]) -> List[CanonicalIndicator]:
        """Schema-check records, dropping invalid ones with a warning."""
        valid = []
        for record in records:
            try:
                if isinstance(record, CanonicalIndicator):
                    record = record.model_dump()
                valid.append(CanonicalIndicator.model_validate(record))
            except ValidationError as e:
                logger.warning(f"[Upsert] Invalid indicator skipped: {e.errors()[0]['msg']}")
        return valid

    def upsert(self, records: Iterable[RecordLike]) -> UpsertResult:
        """
        Validate, classify and persist indicators.

        Args:
            records: CanonicalIndicator instances or equivalent dicts

        Returns:
            UpsertResult with created/updated/total/batches

        Raises:
            StoreError: If the store rejects a batch
        """
        records = list(records)
        logger.info(f"[Upsert] Starting with {len(records)} items")

        valid = self.validate(records)
        result = UpsertResult()
        if not valid:
            logger.warning("[Upsert] No valid indicators to insert.")
            return result

        batch_count = (len(valid) + self.batch_size - 1) // self.batch_size
        logger.info(f"[Upsert] Validated {len(valid)} indicators, writing {batch_count} batches")

        for index in range(batch_count):
            start = index * self.batch_size
            batch = valid[start:start + self.batch_size]

            try:
                created, updated = self._write_batch(batch)
            except Exception as e:
                logger.error(f"[Upsert] Database error on batch {index + 1}/{batch_count}: {e}")
                if isinstance(e, StoreError):
                    raise
                raise StoreError(str(e)) from e

            result.created += created
            result.updated += updated
            result.total += created + updated
            result.batches += 1

            logger.info(
                f"[Upsert] Batch {index + 1}/{batch_count}: {created} new, "
                f"{updated} updated ({result.total} processed)"
            )

            if index < batch_count - 1 and self.pause_seconds > 0:
                self.sleep(self.pause_seconds)

        logger.info(
            f"[Upsert] Complete: {result.created} new entries, "
            f"{result.updated} updated, {result.total} total processed"
        )
        return result

    def _write_batch(self, batch: List[CanonicalIndicator]) -> Tuple[int, int]:
        by_fingerprint: Dict[str, CanonicalIndicator] = {}
        for indicator in batch:
            fp = fingerprint(indicator.type, indicator.value, indicator.source)
            by_fingerprint.pop(fp, None)
            by_fingerprint[fp] = indicator

        existing = self.store.existing_counts(by_fingerprint.keys())
        now = self.clock()

        rows = [
            self._to_row(fp, indicator, existing.get(fp, 0) + 1, now)
            for fp, indicator in by_fingerprint.items()
        ]
        self.store.upsert_batch(rows, seen_at=now)

        updated = sum(1 for fp in by_fingerprint if fp in existing)
        return len(by_fingerprint) - updated, updated

    @staticmethod
    def _to_row(
        fp: str,
        indicator: CanonicalIndicator,
        observed_count: int,
        now: datetime
    ) -> PersistedIndicator:
        classification = classify(indicator, observed_count=observed_count)
        return PersistedIndicator(
            fingerprint=fp,
            type=indicator.type.value,
            value=indicator.value,
            source=indicator.source,
            description=indicator.description,
            first_seen=indicator.first_seen or now,
            last_seen=indicator.last_seen or now,
            severity=classification.severity,
            severity_score=classification.severity_score,
            confidence=classification.confidence,
            tags=list(indicator.tags),
            raw=indicator.model_dump(mode="json"),
            observed_count=observed_count,
        )
