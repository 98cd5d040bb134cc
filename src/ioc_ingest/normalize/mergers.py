"""
Normalizer mergers.

Each merger consolidates one family of staged feed files into a single
deduplicated artifact. Runs are incremental: only files that are new or
changed since the last run (per the normalize tracking store) are read,
and the previous artifact seeds the dedup set.
"""

import csv
import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ioc_ingest.core.config import NormalizeConfig
from ioc_ingest.core.models import MergeResult, NormalizeStatus
from ioc_ingest.feeds.extract import detect_ioc_type
from ioc_ingest.pipeline.tracking import NormalizeTrackingStore

logger = logging.getLogger(__name__)

IP_REGEX = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}(?:/\d{1,2})?\b")

Record = Dict[str, str]


def _clean_header(name: Optional[str]) -> str:
    return (name or "").strip().lstrip("#").strip().strip('"').strip("'").strip().lower()


def read_csv_rows(path: Path) -> List[Record]:
    """
    Read a CSV file into header-keyed rows.

    Comment lines are dropped. When the header itself is commented out
    (the last "#" line containing a comma before the first data line),
    it is used as the header. Header names are lowercased with any
    leading "#" and quotes removed.
    """
    text = path.read_text(encoding="utf-8", errors="replace")
    header: Optional[str] = None
    data_lines: List[str] = []

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("#"):
            if not data_lines and "," in stripped:
                header = stripped.lstrip("#").strip()
            continue
        data_lines.append(stripped)

    lines = ([header] if header is not None else []) + data_lines
    if not lines:
        return []

    reader = csv.DictReader(lines, skipinitialspace=True)
    reader.fieldnames = [_clean_header(h) for h in reader.fieldnames or []]

    rows = []
    for row in reader:
        rows.append({
            key: (value or "").strip()
            for key, value in row.items()
            if key and isinstance(value, (str, type(None)))
        })
    return rows


def write_csv_rows(path: Path, columns: List[str], rows: Iterable[Record]) -> int:
    """Rewrite a CSV artifact in full, returning the row count."""
    rows = list(rows)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore", restval="")
        writer.writeheader()
        writer.writerows(rows)
    logger.info(f"[Normalize] Wrote {len(rows)} rows to: {path}")
    return len(rows)


def _first(row: Dict[str, Any], keys: Tuple[str, ...]) -> str:
    for key in keys:
        value = row.get(key)
        if value:
            return str(value).strip()
    return ""


class Merger(ABC):
    """
    Template for one normalizer task.

    Subclasses declare which staged files they read, how previous output
    is loaded and written, how a staged file turns into records, and the
    natural key used for deduplication.
    """

    task: str
    label: str
    flag: str
    output_option: str

    def __init__(self, config: NormalizeConfig, tracking: NormalizeTrackingStore):
        self.config = config
        self.tracking = tracking
        self.input_dir = Path(config.input_path)
        self.output_dir = Path(config.output_path)

    @property
    def enabled(self) -> bool:
        return bool(getattr(self.config, self.flag))

    @property
    def output_file(self) -> Path:
        return self.output_dir / getattr(self.config, self.output_option)

    @abstractmethod
    def matches(self, file_name: str) -> bool:
        """Whether a staged file belongs to this merger."""

    @abstractmethod
    def key(self, record: Any) -> str:
        """Dedup key of a record (empty means unusable)."""

    @abstractmethod
    def read_file(self, path: Path) -> List[Any]:
        """Records extracted from one staged file; raises on parse failure."""

    @abstractmethod
    def load_output(self) -> List[Any]:
        """Records of the existing artifact."""

    @abstractmethod
    def write_output(self, records: List[Any]) -> None:
        """Rewrite the artifact."""

    def candidate_files(self) -> List[Path]:
        if not self.input_dir.is_dir():
            return []
        return sorted(
            p for p in self.input_dir.iterdir()
            if p.is_file() and not p.name.startswith(".") and self.matches(p.name)
        )

    def new_files(self) -> List[Path]:
        """Candidate files that are new, changed, or failed last time."""
        return [p for p in self.candidate_files() if not self.tracking.is_processed(p)]

    def run(self) -> MergeResult:
        """
        Merge new staged files into the artifact.

        Returns:
            MergeResult with status, previous, added, total and files
        """
        if not self.enabled:
            logger.info(f"[{self.label}] Disabled")
            return MergeResult(task=self.task, status=NormalizeStatus.SKIPPED, reason="disabled")

        new_files = self.new_files()
        if not new_files:
            logger.info(f"[{self.label}] No new files to process")
            return MergeResult(task=self.task, status=NormalizeStatus.SKIPPED, reason="no_new_files")

        logger.info(f"[{self.label}] Found {len(new_files)} new/updated files")

        records: List[Any] = []
        seen = set()
        if self.output_file.exists():
            for record in self.load_output():
                key = self.key(record)
                if key and key not in seen:
                    seen.add(key)
                    records.append(record)
        previous = len(records)
        if previous:
            logger.info(f"[{self.label}] Loaded {previous} existing entries")

        merged: List[Tuple[Path, int]] = []
        for path in new_files:
            try:
                extracted = self.read_file(path)
            except Exception as e:
                logger.error(f"[{self.label}] Error loading {path.name}: {e}")
                self.tracking.mark(path, NormalizeStatus.FAILED, 0)
                continue

            if not extracted:
                self.tracking.mark(path, NormalizeStatus.EMPTY, 0)
                logger.info(f"[{self.label}] {path.name} is empty")
                continue

            added = 0
            for record in extracted:
                key = self.key(record)
                if not key or key in seen:
                    continue
                seen.add(key)
                records.append(record)
                added += 1

            merged.append((path, added))
            logger.info(f"[{self.label}] Processed: {path.name} ({added} new)")

        if records:
            try:
                self.write_output(records)
            except Exception as e:
                logger.error(f"[{self.label}] Error writing {self.output_file}: {e}")
                for path, _ in merged:
                    self.tracking.mark(path, NormalizeStatus.FAILED, 0)
                raise
        else:
            logger.warning(f"[{self.label}] No data to merge")

        for path, added in merged:
            self.tracking.mark(path, NormalizeStatus.SUCCESS, added)
        processed = len(merged)

        total = len(records)
        logger.info(
            f"[{self.label}] Complete: previous {previous}, added {total - previous}, "
            f"total {total}, files {processed}"
        )
        return MergeResult(
            task=self.task,
            status=NormalizeStatus.SUCCESS,
            previous=previous,
            added=total - previous,
            total=total,
            files=processed,
        )


class IPListMerger(Merger):
    """IP and CIDR block lists into one sorted line list."""

    task = "ip"
    label = "MergeIPLists"
    flag = "ip_lists"
    output_option = "output_ip_list"

    PREFIXES = ("ciarmy", "dshield_openioc", "emerging_threats", "spamhaus")

    def matches(self, file_name: str) -> bool:
        return file_name.startswith(self.PREFIXES)

    def key(self, record: str) -> str:
        return record

    def read_file(self, path: Path) -> List[str]:
        spamhaus = path.name.startswith("spamhaus")
        ips = []
        for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
            line = line.strip()
            if not line:
                continue
            if spamhaus:
                line = line.split(";")[0].strip()
            ips.extend(IP_REGEX.findall(line))
        return ips

    def load_output(self) -> List[str]:
        content = self.output_file.read_text(encoding="utf-8", errors="replace")
        return [line.strip() for line in content.splitlines() if line.strip()]

    def write_output(self, records: List[str]) -> None:
        self.output_file.parent.mkdir(parents=True, exist_ok=True)
        self.output_file.write_text("\n".join(sorted(records)), encoding="utf-8")
        logger.info(f"[Normalize] Wrote {len(records)} lines to: {self.output_file}")


class CsvMerger(Merger):
    """Merger whose artifact is a CSV with fixed columns."""

    columns: List[str] = []
    key_column: str

    def key(self, record: Record) -> str:
        return record.get(self.key_column, "")

    def load_output(self) -> List[Record]:
        return read_csv_rows(self.output_file)

    def write_output(self, records: List[Record]) -> None:
        write_csv_rows(self.output_file, self.columns, records)


class ThreatIntelMerger(CsvMerger):
    """URLhaus/ThreatFox CSV exports into one indicator table."""

    task = "threat"
    label = "MergeThreatIntel"
    flag = "threat_intel"
    output_option = "output_threat_intel"
    key_column = "indicator"

    columns = [
        "id", "indicator", "indicator_type", "threat_type", "tags",
        "reporter", "reference", "last_seen", "source",
    ]
    INDICATOR_KEYS = ("ioc_value", "url", "indicator", "value")

    def matches(self, file_name: str) -> bool:
        return file_name.endswith(".csv") and file_name.startswith(("urlhaus", "threatfox"))

    def read_file(self, path: Path) -> List[Record]:
        source = re.sub(r"\.(csv|txt)$", "", path.name)
        records = []
        for row in read_csv_rows(path):
            indicator = _first(row, self.INDICATOR_KEYS)
            if not indicator:
                values = list(row.values())
                if len(values) > 2 and values[2].startswith("http"):
                    indicator = values[2]
            if not indicator:
                continue

            indicator_type = row.get("ioc_type") or row.get("indicator_type")
            if not indicator_type:
                indicator_type = "url" if row.get("url_status") else detect_ioc_type(indicator).value

            records.append({
                "indicator": indicator,
                "indicator_type": indicator_type,
                "threat_type": row.get("threat_type") or row.get("threat") or "",
                "tags": row.get("tags", ""),
                "reporter": row.get("reporter", ""),
                "reference": row.get("reference", ""),
                "last_seen": row.get("last_seen_utc") or row.get("last_seen") or row.get("dateadded") or "",
                "source": source,
            })
        return records

    def write_output(self, records: List[Record]) -> None:
        for index, record in enumerate(records, start=1):
            record["id"] = str(index)
        super().write_output(records)


class PhishingMerger(CsvMerger):
    """PhishStats pages and PhishTank CSV into one phishing URL table."""

    task = "phishing"
    label = "MergePhishing"
    flag = "phishing_urls"
    output_option = "output_phishing_urls"
    key_column = "url"

    columns = [
        "source", "url", "ip", "country", "asn", "date", "score", "host",
        "domain", "tld", "target", "submission_time", "verified", "online",
    ]
    URL_KEYS = ("url", "phish_url")

    def matches(self, file_name: str) -> bool:
        return (
            (file_name.startswith("phishstats_page") and file_name.endswith(".json"))
            or (file_name.startswith("phishtank") and file_name.endswith(".csv"))
        )

    def read_file(self, path: Path) -> List[Record]:
        if path.suffix == ".json":
            return self._read_phishstats(path)
        return self._read_phishtank(path)

    def _read_phishstats(self, path: Path) -> List[Record]:
        content = json.loads(path.read_text(encoding="utf-8"))
        entries = content if isinstance(content, list) else [content]
        records = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            url = _first(entry, self.URL_KEYS)
            if not url:
                continue
            records.append({
                "source": "phishstats",
                "url": url,
                "ip": str(entry.get("ip") or ""),
                "country": str(entry.get("countryname") or entry.get("country") or ""),
                "asn": str(entry.get("asn") or ""),
                "date": str(entry.get("date") or ""),
                "score": str(entry.get("score") or ""),
                "host": str(entry.get("host") or ""),
                "domain": str(entry.get("domain") or ""),
                "tld": str(entry.get("tld") or ""),
            })
        return records

    def _read_phishtank(self, path: Path) -> List[Record]:
        records = []
        for row in read_csv_rows(path):
            url = _first(row, self.URL_KEYS)
            if not url:
                continue
            records.append({
                "source": "phishtank",
                "url": url,
                "target": row.get("target", ""),
                "submission_time": row.get("submission_time", ""),
                "verified": row.get("verified", ""),
                "online": row.get("online", ""),
            })
        return records


class SoftwareMerger(CsvMerger):
    """Malware sample hashes from Bazaar, MalShare and Bazaar YARA stats."""

    task = "software"
    label = "MergeSoftware"
    flag = "software_detections"
    output_option = "output_software_detections"

    columns = ["sha256", "md5", "sha1", "file_name", "file_type", "mime_type", "yara_rule", "source"]
    SHA256_KEYS = ("sha256_hash", "sha256", "SHA256")
    MD5_KEYS = ("md5_hash", "md5", "MD5")
    SHA1_KEYS = ("sha1_hash", "sha1", "SHA1")
    HASH_COLUMNS = {64: "sha256", 32: "md5", 40: "sha1"}

    def key(self, record: Record) -> str:
        return record.get("sha256") or record.get("md5") or record.get("sha1") or ""

    def matches(self, file_name: str) -> bool:
        return (
            (file_name.startswith("bazaar_recent") and file_name.endswith(".csv"))
            or (file_name.startswith("malshare_getlist") and file_name.endswith((".json", ".txt")))
            or (file_name.startswith("bazaar_yara_stats") and file_name.endswith(".json"))
        )

    def read_file(self, path: Path) -> List[Record]:
        if path.name.startswith("bazaar_recent"):
            return self._read_bazaar(path)
        if path.name.startswith("malshare_getlist"):
            return self._read_malshare(path)
        return self._read_bazaar_yara(path)

    def _read_bazaar(self, path: Path) -> List[Record]:
        records = []
        for row in read_csv_rows(path):
            records.append({
                "sha256": _first(row, self.SHA256_KEYS),
                "md5": _first(row, self.MD5_KEYS),
                "sha1": _first(row, self.SHA1_KEYS),
                "file_name": row.get("file_name", ""),
                "file_type": row.get("file_type_guess") or row.get("file_type") or "",
                "mime_type": row.get("mime_type", ""),
                "yara_rule": "",
                "source": "bazaar",
            })
        return records

    def _read_malshare(self, path: Path) -> List[Record]:
        content = path.read_text(encoding="utf-8", errors="replace")
        try:
            data = json.loads(content)
            entries = data if isinstance(data, list) else [data]
        except json.JSONDecodeError:
            entries = [{"hash": line.strip()} for line in content.splitlines() if line.strip()]

        records = []
        for entry in entries:
            if isinstance(entry, str):
                entry = {"hash": entry}
            if not isinstance(entry, dict):
                continue
            digest = (
                _first(entry, ("hash",))
                or _first(entry, self.SHA256_KEYS)
                or _first(entry, self.MD5_KEYS)
                or _first(entry, self.SHA1_KEYS)
            )
            if not digest:
                continue

            record = {column: "" for column in ("sha256", "md5", "sha1")}
            column = self.HASH_COLUMNS.get(len(digest))
            if column:
                record[column] = digest
            record.update({
                "file_name": _first(entry, ("file_name", "filename")),
                "file_type": _first(entry, ("file_type", "type")),
                "mime_type": _first(entry, ("mime_type",)),
                "yara_rule": "",
                "source": "malshare",
            })
            records.append(record)
        return records

    def _read_bazaar_yara(self, path: Path) -> List[Record]:
        content = json.loads(path.read_text(encoding="utf-8"))
        data = content.get("data", content) if isinstance(content, dict) else content
        entries = data if isinstance(data, list) else [data]

        records = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            records.append({
                "sha256": _first(entry, self.SHA256_KEYS),
                "md5": _first(entry, self.MD5_KEYS),
                "sha1": "",
                "file_name": _first(entry, ("file_name",)),
                "file_type": _first(entry, ("file_type",)),
                "mime_type": "",
                "yara_rule": _first(entry, ("yara_rule",)),
                "source": "bazaar_yara",
            })
        return records


MERGERS = [IPListMerger, ThreatIntelMerger, PhishingMerger, SoftwareMerger]
