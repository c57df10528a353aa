"""
The compression orchestration engine.

`BatchCompressionPipeline.run()` turns a `CompressionRequest` into one task per
(file, preset) pair, runs them on a bounded worker pool and reports
everything that happens as typed events on an `EventStream`.

Flow of one run:

1. Validation (synchronous). Unknown presets, empty paths, invalid overrides
   or an oversized batch raise `ValidationError` before anything starts.
2. Expansion (synchronous). Files are the outer loop and presets the inner
   loop; output paths are allocated in exactly that order so collision
   numbering is reproducible.
3. Execution (background). A coordinator thread submits every task to a
   `ThreadPoolExecutor`; tasks beyond the worker limit wait in FIFO order.
   Each worker probes the source, runs the task's encoder strategy and feeds
   raw progress through a per-task `ProgressNormalizer`. A heartbeat thread
   drives the normalizers' stall creep.
4. Completion. When every task is terminal the coordinator emits
   `BatchCompleted` (or `BatchCancelled`) carrying the `BatchResult`.

All run state (tasks, progress table, path allocations) belongs to the run;
the pipeline object only holds configuration and the shared preset catalog,
so several runs may proceed side by side.
"""
import os
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from loguru import logger

from ..config.common import (
    DEFAULT_MAX_WORKERS,
    HEARTBEAT_INTERVAL_SECONDS,
    MAX_TASKS_PER_BATCH,
    MAX_WORKERS_LIMIT,
    MIN_EMIT_DELTA,
    RUNNING_PERCENT_CEILING,
    STALL_CREEP_CEILING,
    STALL_CREEP_RATE,
    STALL_TIMEOUT_SECONDS,
    STDERR_TAIL_LINES,
    TASK_STATUS_CANCELLED,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_FAILED,
    TERMINATE_GRACE_SECONDS,
)
from ..domain.events import (
    AggregateProgress,
    BatchCancelled,
    BatchCompleted,
    BatchEvent,
    BatchStarted,
    FINAL_EVENTS,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStarted,
)
from ..domain.exceptions import (
    EncodeFailed,
    PresetNotFound,
    TaskCancelledError,
    TaskError,
    ValidationError,
)
from ..domain.media import ensure_source_readable, probe_duration
from ..domain.preset import Preset
from ..domain.task import (
    BatchResult,
    CompressionRequest,
    Task,
    TaskKey,
    make_task_key,
    normalize_source_path,
)
from ..services.encoder_strategies import select_strategy
from ..services.output_paths import OutputPathResolver
from ..services.preset_catalog import PresetCatalog
from ..services.progress_normalizer import ProgressNormalizer
from ..utils.ffmpeg_utils import EncoderRunner

DurationProbe = Callable[[Path], Optional[float]]


class EventStream:
    """
    The events of one batch run, in the order they were produced.

    Iterating yields events until (and including) the final `BatchCompleted`
    or `BatchCancelled`. `result()` blocks until the run is over and returns
    its `BatchResult`, whether or not the events were consumed.
    """

    def __init__(self, run: "_BatchRun"):
        self._run = run
        self._queue: "queue.Queue[BatchEvent]" = queue.Queue()
        self._done = threading.Event()
        self._result: Optional[BatchResult] = None

    def __iter__(self) -> Iterator[BatchEvent]:
        while True:
            event = self._queue.get()
            yield event
            if isinstance(event, FINAL_EVENTS):
                return

    def put(self, event: BatchEvent) -> None:
        self._queue.put(event)

    def finish(self, final_event: BatchEvent) -> None:
        self._result = final_event.results
        self._queue.put(final_event)
        self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def task_keys(self):
        return [task.key for task in self._run.tasks]

    def result(self, timeout: Optional[float] = None) -> BatchResult:
        """
        Raises:
            TimeoutError: If the run did not finish within `timeout` seconds.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"Batch did not finish within {timeout} seconds")
        return self._result

    def cancel(self) -> None:
        """Cancels this run only."""
        self._run.cancel()


class _BatchRun:
    """State and threads of a single `run()` call."""

    def __init__(self, pipeline: "BatchCompressionPipeline", tasks: List[Task]):
        self.pipeline = pipeline
        self.tasks = tasks
        self.stream = EventStream(self)
        self.cancel_event = threading.Event()

        self._normalizers: Dict[TaskKey, ProgressNormalizer] = {}
        self._normalizers_lock = threading.Lock()
        self._aggregate_lock = threading.Lock()
        self._last_aggregate = 0.0
        self._aggregate_history: List[float] = []
        self._settled: Set[TaskKey] = set()
        self._heartbeat_stop = threading.Event()

    # --- Control ---

    def start(self) -> None:
        threading.Thread(target=self._coordinate, name="clipcrunch-coordinator", daemon=True).start()

    def cancel(self) -> None:
        if self.cancel_event.is_set():
            return
        self.cancel_event.set()
        signalled = 0
        for task in self.tasks:
            if task.request_cancel(self.pipeline.grace_period):
                signalled += 1
        logger.warning(f"Batch cancellation requested; {signalled} unfinished task(s) signalled.")

    # --- Coordinator ---

    def _coordinate(self) -> None:
        self.stream.put(BatchStarted(task_count=len(self.tasks)))
        heartbeat = threading.Thread(target=self._heartbeat, name="clipcrunch-heartbeat", daemon=True)
        heartbeat.start()
        result: Optional[BatchResult] = None
        try:
            with ThreadPoolExecutor(
                max_workers=self.pipeline.max_workers, thread_name_prefix="clipcrunch-worker"
            ) as executor:
                futures = [executor.submit(self._run_task, task) for task in self.tasks]
                for task, future in zip(self.tasks, futures):
                    try:
                        future.result()
                    except Exception as exc:
                        logger.opt(exception=exc).error(f"Worker crashed while running {task.key}")
                        self._fail(task, None, EncodeFailed(None, f"Unexpected error: {exc}"))
            result = self._collect_result()
        except Exception as exc:
            logger.opt(exception=exc).error("Batch coordinator failed; finishing with the outcomes collected so far.")
        finally:
            self._heartbeat_stop.set()
            heartbeat.join()
            self.pipeline._forget(self)
            if result is None:
                result = BatchResult(aggregate_history=list(self._aggregate_history))
                result.cancelled = self.cancel_event.is_set()
            self.stream.finish(BatchCancelled(result) if result.cancelled else BatchCompleted(result))

    def _collect_result(self) -> BatchResult:
        result = BatchResult(
            outcomes=[task.to_outcome() for task in self.tasks],
            aggregate_history=list(self._aggregate_history),
        )
        result.cancelled = self.cancel_event.is_set() and bool(result.cancelled_tasks)
        summary = result.summary()
        logger.info(
            f"Batch finished: {summary['completed']} completed, {summary['failed']} failed, "
            f"{summary['cancelled']} cancelled (success rate {summary['success_rate']}%)."
        )
        return result

    def _heartbeat(self) -> None:
        while not self._heartbeat_stop.wait(self.pipeline.heartbeat_interval):
            with self._normalizers_lock:
                normalizers = list(self._normalizers.values())
            for normalizer in normalizers:
                normalizer.tick()

    # --- Worker ---

    def _run_task(self, task: Task) -> None:
        if self.cancel_event.is_set() or not task.mark_running():
            if task.finish(TASK_STATUS_CANCELLED):
                logger.info(f"{task.key} cancelled before it started.")
                self._settle(task)
            return

        pipeline = self.pipeline
        normalizer = pipeline.make_normalizer(on_emit=partial(self._emit_task_progress, task))
        with self._normalizers_lock:
            self._normalizers[task.key] = normalizer

        self.stream.put(TaskStarted(task.key))
        strategy = select_strategy(
            task.preset,
            task.overrides,
            stderr_tail_lines=pipeline.stderr_tail_lines,
            temp_work_dir=pipeline.temp_work_dir,
        )
        logger.info(f"Starting {task.key} ({strategy.name}) -> {task.output_path}")

        try:
            ensure_source_readable(task.source)
            duration = pipeline.duration_probe(task.source)
            strategy.execute(task, pipeline.runner, normalizer.accept, source_duration=duration)
        except TaskCancelledError:
            normalizer.close()
            if task.finish(TASK_STATUS_CANCELLED):
                logger.warning(f"{task.key} cancelled.")
                self._discard_partial_output(task)
                self._settle(task)
            return
        except TaskError as e:
            self._fail(task, normalizer, e)
            return
        except Exception as e:
            logger.opt(exception=e).error(f"Unexpected error while running {task.key}")
            self._fail(task, normalizer, EncodeFailed(None, f"Unexpected error: {e}"))
            return
        finally:
            with self._normalizers_lock:
                self._normalizers.pop(task.key, None)

        if task.finish(TASK_STATUS_COMPLETED):
            normalizer.complete()
            logger.success(f"{task.key} completed: {task.output_path}")
            self._settle(task, TaskCompleted(task.key, task.output_path))

    def _fail(self, task: Task, normalizer: Optional[ProgressNormalizer], error: TaskError) -> None:
        if normalizer is not None:
            normalizer.close()
        if not task.finish(TASK_STATUS_FAILED, error):
            return
        logger.error(f"{task.key} failed ({error.error_kind}): {error.detail}")
        if isinstance(error, EncodeFailed) and error.stderr_tail:
            logger.debug("Encoder output (last lines):\n" + "\n".join(error.stderr_tail))
        self._discard_partial_output(task)
        self._settle(task, TaskFailed(task.key, error.error_kind, error.detail))

    @staticmethod
    def _discard_partial_output(task: Task) -> None:
        try:
            if task.output_path.is_file():
                task.output_path.unlink()
                logger.debug(f"Removed partial output {task.output_path}")
        except OSError as e:
            logger.warning(f"Could not remove partial output {task.output_path}: {e}")

    # --- Progress ---

    def _emit_task_progress(self, task: Task, percent: float) -> None:
        task.percent = percent
        self.stream.put(TaskProgress(task.key, percent))
        self._update_aggregate()

    def _settle(self, task: Task, event: Optional[BatchEvent] = None) -> None:
        """Emits the task's terminal event; from then on it counts as 100 in the aggregate."""
        with self._aggregate_lock:
            if event is not None:
                self.stream.put(event)
            self._settled.add(task.key)
        self._update_aggregate()

    def _update_aggregate(self) -> None:
        with self._aggregate_lock:
            if not self.tasks:
                return
            # A finished task stays below 100 until its terminal event is out.
            total = sum(
                100.0 if task.key in self._settled else min(task.percent, RUNNING_PERCENT_CEILING)
                for task in self.tasks
            )
            aggregate = min(total / len(self.tasks), 100.0)
            reached_end = aggregate >= 100.0 and self._last_aggregate < 100.0
            if aggregate - self._last_aggregate < self.pipeline.min_emit_delta and not reached_end:
                return
            self._last_aggregate = aggregate
            self._aggregate_history.append(aggregate)
            self.stream.put(AggregateProgress(aggregate))


class BatchCompressionPipeline:
    """
    Runs compression batches against a shared preset catalog.

    Args:
        catalog: The preset catalog; a catalog with the built-in presets is
            created when omitted.
        max_workers: Number of encoder processes run at the same time,
            clamped to ``1..MAX_WORKERS_LIMIT``.
        ffmpeg_command: Command prefix for the encoder (defaults to the
            resolved ffmpeg executable).
        grace_period: Seconds between the termination signal and a kill.
        temp_work_dir: Where two-pass statistics directories are created.
        duration_probe: Callable returning a source's duration in seconds
            (or None); defaults to ffprobe.
        min_emit_delta, stall_timeout, creep_rate, creep_ceiling,
        heartbeat_interval, clock: Progress smoothing tunables.
        max_tasks: Largest number of tasks a single request may expand to.
    """

    def __init__(
        self,
        catalog: Optional[PresetCatalog] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        ffmpeg_command=None,
        grace_period: float = TERMINATE_GRACE_SECONDS,
        temp_work_dir: Optional[Path] = None,
        duration_probe: DurationProbe = probe_duration,
        min_emit_delta: float = MIN_EMIT_DELTA,
        stall_timeout: float = STALL_TIMEOUT_SECONDS,
        creep_rate: float = STALL_CREEP_RATE,
        creep_ceiling: float = STALL_CREEP_CEILING,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_tasks: int = MAX_TASKS_PER_BATCH,
        stderr_tail_lines: int = STDERR_TAIL_LINES,
    ):
        self.catalog = catalog if catalog is not None else PresetCatalog()
        clamped = min(max(int(max_workers), 1), MAX_WORKERS_LIMIT)
        if clamped != max_workers:
            logger.warning(f"Worker count {max_workers} out of range, using {clamped}.")
        self.max_workers = clamped
        self.runner = EncoderRunner(ffmpeg_command)
        self.grace_period = grace_period
        self.temp_work_dir = Path(temp_work_dir) if temp_work_dir else None
        self.duration_probe = duration_probe
        self.min_emit_delta = min_emit_delta
        self.stall_timeout = stall_timeout
        self.creep_rate = creep_rate
        self.creep_ceiling = creep_ceiling
        self.heartbeat_interval = heartbeat_interval
        self.clock = clock
        self.max_tasks = max_tasks
        self.stderr_tail_lines = stderr_tail_lines

        self._active_runs: Set[_BatchRun] = set()
        self._runs_lock = threading.Lock()

    def make_normalizer(self, on_emit: Callable[[float], None]) -> ProgressNormalizer:
        return ProgressNormalizer(
            on_emit=on_emit,
            min_delta=self.min_emit_delta,
            running_ceiling=RUNNING_PERCENT_CEILING,
            stall_timeout=self.stall_timeout,
            creep_rate=self.creep_rate,
            creep_ceiling=self.creep_ceiling,
            clock=self.clock,
        )

    # --- Validation and expansion ---

    def validate(self, request: CompressionRequest) -> Tuple[List[Path], List[Preset]]:
        """
        Checks a request and returns its de-duplicated files and presets.

        Duplicate files (same normalized path) and duplicate preset ids are
        collapsed, keeping the first occurrence.

        Raises:
            ValidationError: Listing every problem found.
        """
        problems: List[str] = []

        files: List[Path] = []
        seen_files: Set[str] = set()
        for position, source in enumerate(request.files or []):
            if source is None or not os.fspath(source).strip():
                problems.append(f"empty source path at position {position + 1}")
                continue
            normalized = normalize_source_path(source)
            if normalized in seen_files:
                logger.debug(f"Ignoring duplicate input {source}")
                continue
            seen_files.add(normalized)
            files.append(Path(os.path.abspath(os.fspath(source))))
        if not files and not problems:
            problems.append("no input files given")

        presets: List[Preset] = []
        for preset_id in dict.fromkeys(request.preset_ids or []):
            try:
                presets.append(self.catalog.get(preset_id))
            except PresetNotFound as e:
                problems.append(str(e))
        if not request.preset_ids:
            problems.append("no presets selected")

        if request.output_root is None or not os.fspath(request.output_root).strip():
            problems.append("no output directory given")

        selected = {preset.id: preset for preset in presets}
        for preset_id, overrides in (request.overrides or {}).items():
            if preset_id not in selected:
                logger.warning(f"Ignoring overrides for preset '{preset_id}', which is not selected.")
                continue
            problems.extend(overrides.validate(selected[preset_id]))

        task_count = len(files) * len(presets)
        if task_count > self.max_tasks:
            problems.append(f"batch expands to {task_count} tasks, the limit is {self.max_tasks}")

        if problems:
            raise ValidationError(problems)
        return files, presets

    def expand(self, request: CompressionRequest) -> List[Task]:
        """
        Validates `request` and builds its tasks, files outer and presets inner.

        Output paths are allocated by a resolver private to this expansion.
        """
        files, presets = self.validate(request)
        resolver = OutputPathResolver(request.output_root)
        tasks: List[Task] = []
        try:
            for source in files:
                for preset in presets:
                    keep_audio = request.keep_audio_for(preset)
                    tasks.append(
                        Task(
                            key=make_task_key(source, preset.id, keep_audio),
                            source=source,
                            preset=preset,
                            output_path=resolver.resolve(source, preset, keep_audio),
                            keep_audio=keep_audio,
                            overrides=request.overrides_for(preset.id),
                            index=len(tasks),
                        )
                    )
        except OSError as e:
            raise ValidationError([f"cannot prepare output folder under '{request.output_root}': {e}"]) from e
        return tasks

    # --- Running ---

    def run(self, request: CompressionRequest) -> EventStream:
        """
        Starts a batch and returns its event stream immediately.

        Raises:
            ValidationError: If the request is rejected; nothing is started.
        """
        tasks = self.expand(request)
        batch_run = _BatchRun(self, tasks)
        with self._runs_lock:
            self._active_runs.add(batch_run)
        logger.info(
            f"Starting batch of {len(tasks)} task(s) with {self.max_workers} worker(s) into {request.output_root}"
        )
        batch_run.start()
        return batch_run.stream

    def run_to_completion(
        self,
        request: CompressionRequest,
        on_event: Optional[Callable[[BatchEvent], None]] = None,
    ) -> BatchResult:
        """Runs a batch, optionally passing every event to `on_event`, and returns its result."""
        stream = self.run(request)
        for event in stream:
            if on_event is not None:
                on_event(event)
        return stream.result()

    def cancel(self) -> None:
        """
        Cancels every active run of this pipeline.

        Safe to call at any time and any number of times: pending tasks are
        never started, running ones are terminated, finished ones are left alone.
        """
        with self._runs_lock:
            runs = list(self._active_runs)
        for batch_run in runs:
            batch_run.cancel()

    def _forget(self, batch_run: _BatchRun) -> None:
        with self._runs_lock:
            self._active_runs.discard(batch_run)
