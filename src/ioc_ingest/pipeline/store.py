"""
Indicator store for persisting deduplicated indicators.

Uses SQLite; one row per fingerprint. Timestamps are stored as
UTC ISO-8601 strings with microseconds so they compare correctly as text.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ioc_ingest.core.errors import StoreError
from ioc_ingest.core.models import PersistedIndicator, Severity, ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
IN_CHUNK = 500


def _ts(value: datetime) -> str:
    return ensure_utc(value).isoformat(timespec="microseconds")


def _chunks(items: List[str], size: int = IN_CHUNK) -> Iterator[List[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class IndicatorStore:
    """
    SQLite-based storage for threat indicators.

    Provides the bulk upsert, counter increment and query operations the
    upsert engine and ingestion service consume.
    """

    def __init__(self, db_path: str = "./data/indicators.db"):
        """
        Initialize indicator store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

        logger.info(f"Initialized IndicatorStore at {db_path}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection; commit on success, roll back and wrap errors otherwise."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Indicator store error: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS threat_indicators (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    fingerprint TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    value TEXT NOT NULL,
                    source TEXT,
                    description TEXT,
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    severity TEXT NOT NULL DEFAULT 'medium',
                    severity_score INTEGER NOT NULL DEFAULT 50,
                    confidence INTEGER NOT NULL DEFAULT 50,
                    tags TEXT,
                    raw TEXT,
                    observed_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            for column in ("type", "value", "source", "severity"):
                conn.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_threat_indicators_{column}
                    ON threat_indicators({column})
                """)

    # Write side

    def existing_counts(self, fingerprints: Iterable[str]) -> Dict[str, int]:
        """Map each already-stored fingerprint to its observed_count."""
        fps = list(dict.fromkeys(fingerprints))
        found: Dict[str, int] = {}
        with self._connect() as conn:
            for chunk in _chunks(fps):
                placeholders = ",".join("?" * len(chunk))
                cursor = conn.execute(
                    f"SELECT fingerprint, observed_count FROM threat_indicators "
                    f"WHERE fingerprint IN ({placeholders})",
                    chunk
                )
                found.update((row["fingerprint"], row["observed_count"]) for row in cursor)
        return found

    def existing_fingerprints(self, fingerprints: Iterable[str]) -> Set[str]:
        return set(self.existing_counts(fingerprints))

    def bulk_upsert(self, rows: List[PersistedIndicator]) -> None:
        """Insert new rows; on fingerprint conflict update the mutable fields."""
        with self._connect() as conn:
            self._bulk_upsert(conn, rows)

    def increment_observed(self, fingerprints: Iterable[str], seen_at: Optional[datetime] = None) -> None:
        """observed_count += 1 and last_seen = max(last_seen, seen_at) for each fingerprint."""
        with self._connect() as conn:
            self._increment(conn, list(dict.fromkeys(fingerprints)), seen_at or utcnow())

    def upsert_batch(self, rows: List[PersistedIndicator], seen_at: Optional[datetime] = None) -> None:
        """Bulk upsert followed by the observation increment, in one transaction."""
        with self._connect() as conn:
            self._bulk_upsert(conn, rows)
            self._increment(
                conn,
                list(dict.fromkeys(r.fingerprint for r in rows)),
                seen_at or utcnow()
            )

    def _bulk_upsert(self, conn: sqlite3.Connection, rows: List[PersistedIndicator]) -> None:
        now = _ts(utcnow())
        conn.executemany("""
            INSERT INTO threat_indicators (
                fingerprint, type, value, source, description,
                first_seen, last_seen, severity, severity_score, confidence,
                tags, raw, observed_count, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            ON CONFLICT(fingerprint) DO UPDATE SET
                description = excluded.description,
                source = excluded.source,
                last_seen = MAX(threat_indicators.last_seen, excluded.last_seen),
                severity = excluded.severity,
                severity_score = excluded.severity_score,
                confidence = excluded.confidence,
                tags = excluded.tags,
                raw = excluded.raw,
                updated_at = excluded.updated_at
        """, [
            (
                row.fingerprint,
                row.type,
                row.value,
                row.source,
                row.description,
                _ts(row.first_seen),
                _ts(row.last_seen),
                Severity(row.severity).value,
                row.severity_score,
                row.confidence,
                json.dumps(row.tags),
                json.dumps(row.raw, default=str),
                now,
                now,
            )
            for row in rows
        ])

    def _increment(self, conn: sqlite3.Connection, fps: List[str], seen_at: datetime) -> None:
        seen = _ts(seen_at)
        for chunk in _chunks(fps):
            placeholders = ",".join("?" * len(chunk))
            conn.execute(
                f"UPDATE threat_indicators SET "
                f"observed_count = observed_count + 1, "
                f"last_seen = MAX(last_seen, ?), "
                f"updated_at = ? "
                f"WHERE fingerprint IN ({placeholders})",
                [seen, seen, *chunk]
            )

    # Query side

    def find_one(self, fingerprint: str) -> Optional[PersistedIndicator]:
        """
        Get indicator by fingerprint.

        Returns:
            PersistedIndicator if found, None otherwise
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM threat_indicators WHERE fingerprint = ?",
                (fingerprint,)
            ).fetchone()
        return self._row_to_indicator(row) if row else None

    def find_all(
        self,
        fingerprints: Optional[Iterable[str]] = None,
        source: Optional[str] = None,
        severity: Optional[str] = None,
        type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[PersistedIndicator]:
        """
        Query indicators, most recently seen first.

        Args:
            fingerprints: Restrict to these fingerprints
            source: Exact source name
            severity: Severity tier
            type: Indicator type
            since: last_seen lower bound (inclusive)
            until: last_seen upper bound (inclusive)
            limit: Maximum rows returned

        Returns:
            List of PersistedIndicator
        """
        where_chunks = self._where_chunks(fingerprints, source, severity, type, since, until)
        results: List[PersistedIndicator] = []
        with self._connect() as conn:
            for where, params in where_chunks:
                sql = f"SELECT * FROM threat_indicators{where} ORDER BY last_seen DESC"
                if limit is not None:
                    sql += " LIMIT ?"
                    params.append(limit)
                rows = conn.execute(sql, params).fetchall()
                results.extend(self._row_to_indicator(row) for row in rows)

        if len(where_chunks) > 1:
            results.sort(key=lambda indicator: indicator.last_seen, reverse=True)
            if limit is not None:
                results = results[:limit]
        return results

    def count(
        self,
        fingerprints: Optional[Iterable[str]] = None,
        source: Optional[str] = None,
        severity: Optional[str] = None,
        type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None
    ) -> int:
        """Count indicators matching the same filters as find_all."""
        where_chunks = self._where_chunks(fingerprints, source, severity, type, since, until)
        total = 0
        with self._connect() as conn:
            for where, params in where_chunks:
                row = conn.execute(f"SELECT COUNT(*) AS n FROM threat_indicators{where}", params).fetchone()
                total += row["n"]
        return total

    def stats(self) -> Dict[str, Any]:
        """Total count plus counts grouped by source, type and severity."""
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) AS n FROM threat_indicators").fetchone()["n"]
            grouped = {}
            for column in ("source", "type", "severity"):
                cursor = conn.execute(
                    f"SELECT {column} AS k, COUNT(*) AS n FROM threat_indicators "
                    f"GROUP BY {column} ORDER BY n DESC"
                )
                grouped[column] = {row["k"]: row["n"] for row in cursor}

        return {
            "total": total,
            "by_source": grouped["source"],
            "by_type": grouped["type"],
            "by_severity": grouped["severity"],
        }

    @classmethod
    def _where_chunks(
        cls,
        fingerprints: Optional[Iterable[str]],
        source: Optional[str],
        severity: Optional[str],
        type: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime]
    ) -> List[Tuple[str, List[Any]]]:
        """One WHERE clause per fingerprint chunk, or a single one without fingerprints."""
        if fingerprints is None:
            return [cls._filters(None, source, severity, type, since, until)]
        fps = list(dict.fromkeys(fingerprints))
        if not fps:
            return [(" WHERE 0", [])]
        return [
            cls._filters(chunk, source, severity, type, since, until)
            for chunk in _chunks(fps)
        ]

    @staticmethod
    def _filters(
        fingerprints: Optional[List[str]],
        source: Optional[str],
        severity: Optional[str],
        type: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime]
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []

        if fingerprints is not None:
            clauses.append(f"fingerprint IN ({','.join('?' * len(fingerprints))})")
            params.extend(fingerprints)
        if source is not None:
            clauses.append("source = ?")
            params.append(source)
        if severity is not None:
            clauses.append("severity = ?")
            params.append(getattr(severity, "value", severity))
        if type is not None:
            clauses.append("type = ?")
            params.append(getattr(type, "value", type))
        if since is not None:
            clauses.append("last_seen >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append("last_seen <= ?")
            params.append(_ts(until))

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def _row_to_indicator(self, row: sqlite3.Row) -> PersistedIndicator:
        """Convert database row to PersistedIndicator."""
        return PersistedIndicator(
            fingerprint=row["fingerprint"],
            type=row["type"],
            value=row["value"],
            source=row["source"],
            description=row["description"] or "",
            first_seen=datetime.fromisoformat(row["first_seen"]),
            last_seen=datetime.fromisoformat(row["last_seen"]),
            severity=Severity(row["severity"]),
            severity_score=row["severity_score"],
            confidence=row["confidence"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            raw=json.loads(row["raw"]) if row["raw"] else {},
            observed_count=row["observed_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
