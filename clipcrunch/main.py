"""
Main entry point for clipcrunch.

This module configures logging, parses the command line, applies custom
preset changes and runs one compression batch through the orchestration
engine, logging its events as they arrive. Ctrl+C cancels the batch and
waits for running encoders to stop.
"""

import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import yaml
from loguru import logger

from .cli import collect_input_files, get_args, overrides_from_args
from .config.common import DEFAULT_MAX_WORKERS, LOGGER_FORMAT, TEMP_WORK_DIR, USER_MAX_WORKERS
from .domain.events import (
    AggregateProgress,
    BatchCancelled,
    BatchEvent,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStarted,
)
from .domain.exceptions import ClipCrunchException, ValidationError
from .domain.preset import Preset
from .domain.task import CompressionRequest
from .pipeline.batch_pipeline import BatchCompressionPipeline
from .services.custom_preset_store import CustomPresetStore
from .services.logging_service import BatchReport
from .services.preset_catalog import PresetCatalog
from .utils.ffmpeg_utils import resolve_ffmpeg_path, verify_ffmpeg
from .utils.format_utils import format_percent


class EventLogger:
    """Logs batch events; overall progress is logged in 10% steps."""

    def __init__(self):
        self._next_aggregate_step = 10.0

    def __call__(self, event: BatchEvent) -> None:
        if isinstance(event, TaskStarted):
            logger.info(f"Started {event.task_key}")
        elif isinstance(event, TaskProgress):
            logger.trace(f"{event.task_key}: {format_percent(event.percent)}")
        elif isinstance(event, AggregateProgress):
            if event.percent >= self._next_aggregate_step:
                logger.info(f"Overall progress: {format_percent(event.percent)}")
                while self._next_aggregate_step <= event.percent:
                    self._next_aggregate_step += 10.0
        elif isinstance(event, TaskCompleted):
            logger.info(f"Finished {event.task_key} -> {event.output_path}")
        elif isinstance(event, TaskFailed):
            logger.error(f"Failed {event.task_key} [{event.error_kind}]: {event.detail}")
        elif isinstance(event, BatchCancelled):
            logger.warning("Batch cancelled.")


def _apply_preset_changes(args, catalog: PresetCatalog, store: CustomPresetStore) -> None:
    if args.add_preset:
        with open(args.add_preset, "r", encoding="utf-8") as f:
            preset_data = yaml.safe_load(f) or {}
        preset = Preset.from_dict(preset_data)
        catalog.add_custom(preset.id, preset)
        store.save_from(catalog)
        logger.success(f"Custom preset '{preset.id}' saved to {store.path}")
    if args.remove_preset:
        catalog.remove_custom(args.remove_preset)
        store.save_from(catalog)
        logger.success(f"Custom preset '{args.remove_preset}' removed")


def _print_presets(catalog: PresetCatalog) -> None:
    for preset in catalog.list():
        origin = "built-in" if preset.builtin else "custom"
        two_pass = ", two-pass" if preset.is_two_pass else ""
        print(
            f"{preset.id:<20} {preset.name:<26} {preset.video_codec:<18} "
            f"{preset.resolution:<10} .{preset.extension:<5} ({origin}{two_pass})"
        )
        if preset.description:
            print(f"{'':<20} {preset.description}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Runs the CLI.

    Returns:
        The process exit code: 0 when every task succeeded, 1 when a task
        failed or the batch was cancelled, 2 for invalid input.
    """
    args = get_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=args.log_level, format=LOGGER_FORMAT)
    logger.debug(f"Parsed arguments: {args}")

    catalog = PresetCatalog()
    store = CustomPresetStore(Path(args.custom_presets).expanduser())
    store.load_into(catalog)

    try:
        _apply_preset_changes(args, catalog, store)
    except (ClipCrunchException, OSError, yaml.YAMLError, KeyError, TypeError, ValueError) as e:
        logger.error(f"Could not update custom presets: {e}")
        return 2

    if args.list_presets:
        _print_presets(catalog)
        return 0

    if not args.inputs:
        if args.add_preset or args.remove_preset:
            return 0
        logger.error("No input files given. Use --help for usage.")
        return 2

    files = collect_input_files(args.inputs)
    if not files:
        logger.error("None of the given inputs is a video file.")
        return 2

    ffmpeg_cmd = resolve_ffmpeg_path()
    if not verify_ffmpeg(ffmpeg_cmd):
        return 1

    preset_ids = args.presets or ["web"]
    overrides = overrides_from_args(args)
    request = CompressionRequest(
        files=files,
        preset_ids=preset_ids,
        output_root=Path(args.output_dir).expanduser(),
        keep_audio=args.keep_audio,
        overrides={preset_id: overrides for preset_id in preset_ids} if overrides else {},
    )

    pipeline = BatchCompressionPipeline(
        catalog,
        max_workers=args.processes or USER_MAX_WORKERS or DEFAULT_MAX_WORKERS,
        ffmpeg_command=[ffmpeg_cmd],
        temp_work_dir=args.temp_work_dir or TEMP_WORK_DIR,
    )

    started_at = datetime.now()
    try:
        stream = pipeline.run(request)
    except ValidationError as e:
        for problem in e.problems:
            logger.error(f"Invalid request: {problem}")
        return 2

    on_event = EventLogger()
    try:
        for event in stream:
            on_event(event)
    except KeyboardInterrupt:
        logger.warning("Interrupted, cancelling running encodes...")
        pipeline.cancel()
        for event in stream:
            on_event(event)

    result = stream.result()
    finished_at = datetime.now()

    if args.report is not None:
        report_path = Path(args.report) if args.report else request.output_root
        BatchReport(Path(report_path)).write(result, started_at, finished_at)

    summary = result.summary()
    if summary["failed"] or result.cancelled:
        logger.warning(
            f"clipcrunch finished with {summary['failed']} failed and {summary['cancelled']} cancelled task(s)."
        )
        return 1
    logger.success(f"clipcrunch finished: {summary['completed']} file(s) written.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
