"""
Lifecycle events emitted by a batch run.

A run produces a sequence of these small immutable records. Consumers (the
CLI, a GUI, a test) pull them from the run's event stream; the engine holds
no reference back into the consumer.

Order guarantees:
- `BatchStarted` is first; exactly one of `BatchCompleted` / `BatchCancelled`
  is last and carries the `BatchResult`.
- For one task: `TaskStarted`, then non-decreasing `TaskProgress`, then one
  of `TaskCompleted` / `TaskFailed` (cancelled tasks only appear in the result).
- Events of different tasks are interleaved in no particular order.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .task import TaskKey

if TYPE_CHECKING:
    from .task import BatchResult


@dataclass(frozen=True)
class BatchEvent:
    """Base class for all events of a batch run."""


@dataclass(frozen=True)
class BatchStarted(BatchEvent):
    task_count: int


@dataclass(frozen=True)
class TaskStarted(BatchEvent):
    task_key: TaskKey


@dataclass(frozen=True)
class TaskProgress(BatchEvent):
    task_key: TaskKey
    percent: float


@dataclass(frozen=True)
class AggregateProgress(BatchEvent):
    percent: float


@dataclass(frozen=True)
class TaskCompleted(BatchEvent):
    task_key: TaskKey
    output_path: Path


@dataclass(frozen=True)
class TaskFailed(BatchEvent):
    task_key: TaskKey
    error_kind: str
    detail: str


@dataclass(frozen=True)
class BatchCompleted(BatchEvent):
    results: "BatchResult"


@dataclass(frozen=True)
class BatchCancelled(BatchEvent):
    results: "BatchResult"


FINAL_EVENTS = (BatchCompleted, BatchCancelled)
