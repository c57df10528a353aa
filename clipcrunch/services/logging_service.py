"""
This module provides the batch report writer.

Console logging goes through loguru everywhere. In addition, the CLI can
write a machine-readable YAML report of a finished batch: one entry per task
with its outcome, timing and output size, plus the batch totals. The engine
itself never writes reports; it only produces the `BatchResult` they are
built from.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List

import yaml
from loguru import logger

from ..config.common import REPORT_FILE_NAME
from ..domain.task import BatchResult, TaskOutcome
from ..utils.format_utils import format_timedelta, formatted_size


class BatchReport:
    """
    Writes a `BatchResult` as a YAML document.

    If the target file already holds a report list, the new batch is appended
    to it, so that repeated runs into the same output folder build a history.
    """

    def __init__(self, report_path: Path):
        if report_path.is_dir() or not report_path.suffix:
            report_path = report_path / REPORT_FILE_NAME
        self.report_path: Path = report_path.resolve()
        self.report_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _task_entry(outcome: TaskOutcome) -> Dict:
        entry = {
            "source": str(outcome.source),
            "preset": outcome.preset_id,
            "keep_audio": outcome.task_key.keep_audio,
            "status": outcome.status,
        }
        if outcome.output_path is not None:
            entry["output"] = str(outcome.output_path)
        if outcome.output_size is not None:
            entry["output_size"] = formatted_size(outcome.output_size)
        if outcome.elapsed_seconds is not None:
            entry["elapsed"] = format_timedelta(timedelta(seconds=outcome.elapsed_seconds))
        if outcome.error_kind:
            entry["error_kind"] = outcome.error_kind
            entry["detail"] = outcome.detail
        if outcome.exit_code is not None:
            entry["exit_code"] = outcome.exit_code
        return entry

    def build_entry(self, result: BatchResult, started_at: datetime, finished_at: datetime) -> Dict:
        summary = result.summary()
        return {
            "started": started_at.isoformat(timespec="seconds"),
            "finished": finished_at.isoformat(timespec="seconds"),
            "total_time": format_timedelta(finished_at - started_at),
            "cancelled": result.cancelled,
            "total": summary["total"],
            "completed": summary["completed"],
            "failed": summary["failed"],
            "cancelled_tasks": summary["cancelled"],
            "success_rate": summary["success_rate"],
            "tasks": [self._task_entry(outcome) for outcome in result.outcomes],
        }

    def write(self, result: BatchResult, started_at: datetime, finished_at: datetime) -> None:
        entries: List[Dict] = []
        if self.report_path.is_file():
            try:
                with self.report_path.open("r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
                if isinstance(loaded, list):
                    entries = loaded
                elif loaded is not None:
                    logger.warning(f"Report {self.report_path} contained unexpected data. Starting a new report.")
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Error reading report {self.report_path}: {e}. Starting a new report.")

        entries.append(self.build_entry(result, started_at, finished_at))

        try:
            with self.report_path.open("w", encoding="utf-8") as f:
                yaml.dump(
                    entries,
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    allow_unicode=True,
                    indent=4,
                    width=220,
                )
            logger.info(f"Batch report written to {self.report_path}")
        except OSError as e:
            logger.error(f"Failed to write batch report {self.report_path}: {e}")
