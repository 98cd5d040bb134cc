"""
Tracking stores.

Two small JSON key-value files: fetch tracking (last fetch outcome per
source key) and normalize tracking (processing state per staged file).

Every mutation re-reads the file, changes one key and rewrites the file
through a temp file and os.replace, so concurrent tiers touching other
keys are not lost and readers never see a partial file. Load failures
yield an empty mapping; save failures are logged.
"""

import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from ioc_ingest.core.models import (
    FetchRecord,
    FetchResult,
    FetchStatus,
    NormalizeRecord,
    NormalizeStatus,
    SourceDescriptor,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

FETCH_TRACKING_FILE = ".fetch_tracking.json"
NORMALIZE_TRACKING_FILE = ".normalize_tracking.json"


class JsonStore:
    """JSON object file with per-key read-modify-write updates."""

    label = "Tracking"

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        """Read the whole mapping; missing or unreadable files yield {}."""
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"[{self.label}] Error loading tracking file: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"[{self.label}] Tracking file is not a JSON object, ignoring")
            return {}
        return data

    def save(self, data: Dict[str, Any]) -> None:
        """Atomically replace the file contents."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f"{self.path.name}.",
                suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, default=str)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.error(f"[{self.label}] Error saving tracking file: {e}")

    def _set(self, key: str, value: Optional[Dict[str, Any]]) -> None:
        data = self.load()
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value
        self.save(data)


class FetchTrackingStore(JsonStore):
    """Last FetchRecord per source key."""

    label = "FetchTracking"

    @classmethod
    def in_directory(cls, feeds_path: Union[str, Path]) -> "FetchTrackingStore":
        return cls(Path(feeds_path) / FETCH_TRACKING_FILE)

    def get(self, key: str) -> Optional[FetchRecord]:
        raw = self.load().get(key)
        if raw is None:
            return None
        try:
            return FetchRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"[{self.label}] Ignoring malformed record for {key}: {e.error_count()} errors")
            return None

    def all(self) -> Dict[str, FetchRecord]:
        records = {}
        for key in self.load():
            record = self.get(key)
            if record is not None:
                records[key] = record
        return records

    def record(self, source: SourceDescriptor, result: FetchResult) -> FetchRecord:
        """Store the outcome of one fetch attempt, replacing any previous record."""
        record = FetchRecord(
            name=source.name,
            status=result.status,
            timestamp=result.timestamp or utcnow(),
            count=result.count or 0,
            error=result.error,
        )
        self._set(source.key, record.model_dump(mode="json"))
        return record

    def delete(self, key: str) -> None:
        self._set(key, None)

    def should_fetch(self, source: SourceDescriptor, now: Optional[datetime] = None) -> bool:
        """
        Whether the source is due.

        Due when there is no record, the last attempt did not succeed, or
        at least one TTL has elapsed since the last success.
        """
        record = self.get(source.key)
        if record is None or record.status != FetchStatus.SUCCESS:
            return True

        now = ensure_utc(now or utcnow())
        elapsed = now - record.timestamp
        hours = int(elapsed.total_seconds() // 3600)

        if elapsed >= source.ttl:
            logger.info(f"[{source.name}] TTL expired ({hours}h ago), will fetch")
            return True

        logger.info(f"[{source.name}] Already fetched recently ({hours}h ago), skipping")
        return False


def file_hash(path: Union[str, Path]) -> Optional[str]:
    """md5 hex digest of a file's contents."""
    try:
        return hashlib.md5(Path(path).read_bytes()).hexdigest()
    except OSError:
        return None


def file_timestamp(path: Union[str, Path]) -> Optional[str]:
    """File modification time as ISO-8601 UTC."""
    try:
        mtime = Path(path).stat().st_mtime
    except OSError:
        return None
    return datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()


class NormalizeTrackingStore(JsonStore):
    """Processing state per staged file name."""

    label = "NormalizeTracking"

    @classmethod
    def in_directory(cls, output_path: Union[str, Path]) -> "NormalizeTrackingStore":
        return cls(Path(output_path) / NORMALIZE_TRACKING_FILE)

    def get(self, file_name: str) -> Optional[NormalizeRecord]:
        raw = self.load().get(file_name)
        if not isinstance(raw, dict):
            return None
        try:
            return NormalizeRecord.model_validate({"file": file_name, **raw})
        except ValidationError:
            return None

    def all(self) -> Dict[str, Any]:
        return self.load()

    def is_processed(self, path: Union[str, Path]) -> bool:
        """
        True when the file was processed before and is unchanged.

        Files whose last attempt failed are always reprocessed.
        """
        path = Path(path)
        record = self.get(path.name)
        if record is None:
            return False

        if record.hash != file_hash(path) or record.timestamp != file_timestamp(path):
            logger.info(f"[{self.label}] {path.name} has changed, will reprocess")
            return False

        if record.status == NormalizeStatus.FAILED:
            logger.info(f"[{self.label}] {path.name} failed last time, will retry")
            return False

        logger.debug(f"[{self.label}] {path.name} already processed, skipping")
        return True

    def mark(
        self,
        path: Union[str, Path],
        status: NormalizeStatus,
        count: int = 0
    ) -> NormalizeRecord:
        """Record the outcome of processing one staged file."""
        path = Path(path)
        record = NormalizeRecord(
            file=path.name,
            hash=file_hash(path),
            timestamp=file_timestamp(path),
            status=status,
            count=count,
        )
        self._set(path.name, record.model_dump(mode="json", exclude={"file"}))
        return record

    def reset(self) -> bool:
        """
        Delete the tracking file so every staged file is reprocessed.

        Returns:
            True if a file was deleted, False if none existed
        """
        if not self.path.exists():
            return False
        self.path.unlink()
        logger.info(f"[{self.label}] Tracking file reset")
        return True
