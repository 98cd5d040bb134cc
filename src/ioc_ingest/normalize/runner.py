"""
Normalization runner.

Runs the four mergers sequentially, rolls up their results, and exposes
manual single-task runs, artifact statistics and a tracking reset.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ioc_ingest.core.config import NormalizeConfig
from ioc_ingest.core.errors import UnknownNormalizerError
from ioc_ingest.core.models import MergeResult, NormalizeStatus
from ioc_ingest.normalize.mergers import MERGERS, Merger, read_csv_rows
from ioc_ingest.pipeline.tracking import NormalizeTrackingStore

logger = logging.getLogger(__name__)

TASK_NAMES = ["ip", "threat", "phishing", "software", "all"]


def format_bytes(size: int, decimals: int = 2) -> str:
    """Human-readable byte size (1024-based)."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, decimals):g} {units[index]}"


class NormalizeRunner:
    """Master runner for the normalizer mergers."""

    def __init__(
        self,
        config: Optional[NormalizeConfig] = None,
        tracking: Optional[NormalizeTrackingStore] = None
    ):
        """
        Initialize runner.

        Args:
            config: Normalization configuration
            tracking: Normalize tracking store (defaults to the one in output_path)
        """
        self.config = config or NormalizeConfig()
        self.tracking = tracking or NormalizeTrackingStore.in_directory(self.config.output_path)
        self.mergers: Dict[str, Merger] = {
            cls.task: cls(self.config, self.tracking) for cls in MERGERS
        }

    def run_all(self) -> Dict[str, Any]:
        """
        Run every merger.

        A merger raising is recorded as failed; the others still run.

        Returns:
            {"summary": {...}, "results": [MergeResult dicts]}
        """
        if not self.config.run_jobs:
            logger.info("[Normalize] Normalization disabled globally (RUN_JOBS=false)")
            results = [
                MergeResult(task=task, status=NormalizeStatus.SKIPPED, reason="run_jobs_disabled")
                for task in self.mergers
            ]
            return self._rollup(results, 0.0)

        logger.info("[Normalize] Normalization cycle started")
        start = time.monotonic()
        results: List[MergeResult] = []

        for task, merger in self.mergers.items():
            logger.info(f"[Normalize] Running: {merger.label}")
            try:
                result = merger.run()
            except Exception as e:
                logger.error(f"[Normalize] {merger.label} failed: {e}")
                result = MergeResult(task=task, status=NormalizeStatus.FAILED, error=str(e))
            results.append(result)

        rollup = self._rollup(results, time.monotonic() - start)
        summary = rollup["summary"]
        logger.info(
            f"[Normalize] Cycle complete in {summary['duration']}s: "
            f"{summary['successful']} success, {summary['failed']} failed, "
            f"{summary['skipped']} skipped, {summary['total_added']} new entries"
        )
        return rollup

    @staticmethod
    def _rollup(results: List[MergeResult], duration: float) -> Dict[str, Any]:
        return {
            "summary": {
                "successful": sum(1 for r in results if r.status == NormalizeStatus.SUCCESS),
                "failed": sum(1 for r in results if r.status == NormalizeStatus.FAILED),
                "skipped": sum(1 for r in results if r.status == NormalizeStatus.SKIPPED),
                "total": len(results),
                "duration": round(duration, 2),
                "total_added": sum(r.added for r in results),
            },
            "results": [r.model_dump(mode="json") for r in results],
        }

    def run(self, task: str) -> Dict[str, Any]:
        """
        Run one merger by task name, or all of them.

        Args:
            task: ip, threat, phishing, software or all

        Raises:
            UnknownNormalizerError: For any other name
        """
        if task not in TASK_NAMES:
            raise UnknownNormalizerError(
                f"Unknown task: {task}. Available: {', '.join(TASK_NAMES)}"
            )

        logger.info(f"[ManualNormalize] Running: {task}")
        if task == "all":
            return self.run_all()
        return self.mergers[task].run().model_dump(mode="json")

    def has_new_files(self) -> bool:
        """Whether any enabled merger has a new or changed staged file."""
        return any(
            merger.new_files()
            for merger in self.mergers.values()
            if merger.enabled
        )

    def stats(self) -> Dict[str, Any]:
        """Per-artifact existence, size, row count and mtime, plus tracking."""
        output_dir = Path(self.config.output_path).resolve()
        stats: Dict[str, Any] = {
            "output_directory": str(output_dir),
            "files": [],
            "tracking": self.tracking.all(),
        }

        for merger in self.mergers.values():
            path = merger.output_file
            if not path.exists():
                stats["files"].append({"name": path.name, "exists": False})
                continue

            file_stat = path.stat()
            if path.suffix == ".csv":
                count = len(read_csv_rows(path))
            else:
                count = len(merger.load_output())

            stats["files"].append({
                "name": path.name,
                "exists": True,
                "size": file_stat.st_size,
                "size_human": format_bytes(file_stat.st_size),
                "count": count,
                "last_modified": datetime.fromtimestamp(file_stat.st_mtime, tz=timezone.utc).isoformat(),
            })

        return stats

    def reset_tracking(self) -> Dict[str, str]:
        """Delete the normalize tracking file so everything is reprocessed."""
        if self.tracking.reset():
            return {
                "status": "success",
                "message": "Tracking file deleted, all files will be reprocessed on next run",
            }
        return {"status": "success", "message": "No tracking file found"}
