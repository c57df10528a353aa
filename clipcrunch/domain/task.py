"""
Models for a batch request, the tasks it expands into and their outcomes.

- `CompressionRequest`: what the caller asks for (files x presets + options).
- `Task`: one (source file, preset) pair with its resolved output path. A task
  owns at most one encoder process at a time and moves through
  Pending -> Running -> {Completed | Failed | Cancelled}. Entering a terminal
  state is exclusive: whichever of "finished" or "cancelled" gets there first
  wins, later attempts are ignored.
- `TaskOutcome` / `BatchResult`: the collected results of a run.
"""
from __future__ import annotations

import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence, Union

from loguru import logger

from .exceptions import EncodeFailed, TaskError
from .preset import AdvancedOverrides, Preset
from ..config.common import (
    TASK_STATUS_CANCELLED,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_FAILED,
    TASK_STATUS_PENDING,
    TASK_STATUS_RUNNING,
    TERMINAL_TASK_STATUSES,
)
from ..utils.ffmpeg_utils import terminate_process

PathLike = Union[str, os.PathLike]


class TaskKey(NamedTuple):
    """Identity of a task: normalized source path, preset id and the keep-audio flag."""

    source: str
    preset_id: str
    keep_audio: bool

    def __str__(self) -> str:
        audio = "audio" if self.keep_audio else "muted"
        return f"{os.path.basename(self.source)}[{self.preset_id}/{audio}]"


def normalize_source_path(source: PathLike) -> str:
    return os.path.normcase(os.path.abspath(os.fspath(source)))


def make_task_key(source: PathLike, preset_id: str, keep_audio: bool) -> TaskKey:
    """
    Builds the key used to correlate events with a (file, preset, audio) pair.

    Status queries from outside the engine must build their key with this
    function so that it matches the keys carried by emitted events.
    """
    return TaskKey(normalize_source_path(source), preset_id, bool(keep_audio))


@dataclass
class CompressionRequest:
    """
    A batch of work: every file is encoded with every selected preset.

    Attributes:
        files: Input video paths, in the order they should be scheduled.
        preset_ids: Presets applied to every file.
        output_root: Directory under which per-preset folders are created.
        keep_audio: Request-wide audio flag. None defers to each preset's default.
        overrides: Optional `AdvancedOverrides` keyed by preset id.
    """

    files: Sequence[PathLike]
    preset_ids: Sequence[str]
    output_root: PathLike
    keep_audio: Optional[bool] = None
    overrides: Dict[str, AdvancedOverrides] = field(default_factory=dict)

    def overrides_for(self, preset_id: str) -> AdvancedOverrides:
        return self.overrides.get(preset_id) or AdvancedOverrides()

    def keep_audio_for(self, preset: Preset) -> bool:
        """Per-preset override first, then the request flag, then the preset default."""
        override = self.overrides_for(preset.id).keep_audio
        if override is not None:
            return override
        if self.keep_audio is not None:
            return self.keep_audio
        return not preset.remove_audio_default


class Task:
    """
    The unit of work: encode one source file with one preset.

    All state transitions and the process handle are guarded by a per-task
    lock, so `request_cancel()` may be called from any thread while the
    worker thread is running the encoder.
    """

    def __init__(
        self,
        key: TaskKey,
        source: Path,
        preset: Preset,
        output_path: Path,
        keep_audio: bool,
        overrides: Optional[AdvancedOverrides] = None,
        index: int = 0,
    ):
        self.key = key
        self.source = source
        self.preset = preset
        self.output_path = output_path
        self.keep_audio = keep_audio
        self.overrides = overrides or AdvancedOverrides()
        self.index = index

        self.status: str = TASK_STATUS_PENDING
        self.error: Optional[TaskError] = None
        self.percent: float = 0.0
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._cancel_requested = False
        self._grace_period = 5.0

    def __repr__(self) -> str:
        return f"Task({self.key}, status={self.status})"

    @property
    def cancel_requested(self) -> bool:
        with self._lock:
            return self._cancel_requested

    def mark_running(self) -> bool:
        """Moves a pending task to Running. Returns False if it was already cancelled."""
        with self._lock:
            if self.status != TASK_STATUS_PENDING or self._cancel_requested:
                return False
            self.status = TASK_STATUS_RUNNING
            self.started_at = time.monotonic()
            return True

    def finish(self, status: str, error: Optional[TaskError] = None) -> bool:
        """
        Moves the task into a terminal state.

        Returns:
            True if this call performed the transition, False if the task had
            already reached a terminal state (the earlier outcome stands).
        """
        if status not in TERMINAL_TASK_STATUSES:
            raise ValueError(f"'{status}' is not a terminal task status")
        with self._lock:
            if self.status in TERMINAL_TASK_STATUSES:
                return False
            self.status = status
            self.error = error
            self.finished_at = time.monotonic()
            if status == TASK_STATUS_COMPLETED:
                self.percent = 100.0
            self._process = None
            return True

    def attach_process(self, process: subprocess.Popen) -> None:
        """Registers the running encoder process; terminates it at once if cancel already arrived."""
        with self._lock:
            self._process = process
            cancel_now = self._cancel_requested
        if cancel_now:
            self._start_termination(process)

    def detach_process(self) -> None:
        with self._lock:
            self._process = None

    def request_cancel(self, grace_period: float) -> bool:
        """
        Asks the task to stop.

        Sends a termination signal to the current process (escalating to a
        kill after `grace_period` seconds) without blocking the caller. The
        worker thread observes the exit and records the final state.

        Returns:
            False if the task had already reached a terminal state.
        """
        with self._lock:
            if self.status in TERMINAL_TASK_STATUSES:
                return False
            self._cancel_requested = True
            self._grace_period = grace_period
            process = self._process
        if process is not None:
            self._start_termination(process)
        return True

    def _start_termination(self, process: subprocess.Popen) -> None:
        logger.debug(f"Terminating encoder process {process.pid} for {self.key}")
        threading.Thread(
            target=terminate_process,
            args=(process, self._grace_period),
            name=f"terminate-{process.pid}",
            daemon=True,
        ).start()

    def to_outcome(self) -> TaskOutcome:
        with self._lock:
            error = self.error
            elapsed = None
            if self.started_at is not None and self.finished_at is not None:
                elapsed = self.finished_at - self.started_at
            status = self.status
        output_size = None
        if status == TASK_STATUS_COMPLETED:
            try:
                output_size = self.output_path.stat().st_size
            except OSError as e:
                logger.warning(f"Cannot read the size of {self.output_path}: {e}")
        return TaskOutcome(
            task_key=self.key,
            source=self.source,
            preset_id=self.preset.id,
            status=status,
            output_path=self.output_path if status == TASK_STATUS_COMPLETED else None,
            error_kind=error.error_kind if error else None,
            detail=error.detail if error else None,
            exit_code=error.exit_code if isinstance(error, EncodeFailed) else None,
            elapsed_seconds=elapsed,
            output_size=output_size,
        )


@dataclass
class TaskOutcome:
    task_key: TaskKey
    source: Path
    preset_id: str
    status: str
    output_path: Optional[Path] = None
    error_kind: Optional[str] = None
    detail: Optional[str] = None
    exit_code: Optional[int] = None
    elapsed_seconds: Optional[float] = None
    output_size: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TASK_STATUS_COMPLETED


@dataclass
class BatchResult:
    """
    Outcome of one batch run.

    `outcomes` lists one entry per task in scheduling order (files outer,
    presets inner). `aggregate_history` holds every aggregate percentage that
    was forwarded to the caller, in order.
    """

    outcomes: List[TaskOutcome] = field(default_factory=list)
    aggregate_history: List[float] = field(default_factory=list)
    cancelled: bool = False

    def _with_status(self, status: str) -> List[TaskOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def completed(self) -> List[TaskOutcome]:
        return self._with_status(TASK_STATUS_COMPLETED)

    @property
    def failed(self) -> List[TaskOutcome]:
        return self._with_status(TASK_STATUS_FAILED)

    @property
    def cancelled_tasks(self) -> List[TaskOutcome]:
        return self._with_status(TASK_STATUS_CANCELLED)

    def outcome_for(self, key: TaskKey) -> Optional[TaskOutcome]:
        return next((o for o in self.outcomes if o.task_key == key), None)

    def summary(self) -> dict:
        total = len(self.outcomes)
        completed = len(self.completed)
        return {
            "total": total,
            "completed": completed,
            "failed": len(self.failed),
            "cancelled": len(self.cancelled_tasks),
            "success_rate": round(completed / total * 100, 1) if total else 0.0,
            "errors": [
                {"task": str(o.task_key), "kind": o.error_kind, "detail": o.detail}
                for o in self.failed
            ],
        }
