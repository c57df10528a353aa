"""
Encoder strategies: how a task becomes one or more ffmpeg invocations.

There are three strategies, sharing the `EncoderStrategy` base class:

- `BasicStrategy`: one invocation using only the preset's own parameters.
  Used when the caller gave no advanced overrides for the preset.
- `SinglePassStrategy`: one invocation with explicit parameters derived from
  the preset and the caller's overrides (bitrate, crf, resolution, fps,
  faststart, web profile).
- `TwoPassStrategy`: an analysis pass whose output is discarded, followed by
  the real encode using the statistics of the first pass. The first pass
  covers 0-50% of the task's progress and the second 50-100%.

A strategy instance is created per task by `select_strategy()` because it
keeps the per-task progress basis (the source duration).

Argument lists never contain the ffmpeg executable itself; the
`EncoderRunner` prepends it.

Failures are reported as task-scoped exceptions:
- the process could not be started -> `SpawnFailed`
- the process exited non-zero -> `EncodeFailed` (or a more specific
  `SourceUnavailable` / `OutputWriteFailed` when the error output says so)
- the process succeeded but left no usable file -> `OutputWriteFailed`
"""
import os
import re
import shutil
import tempfile
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger

from ..config.common import RUNNING_PERCENT_CEILING, STDERR_TAIL_LINES
from ..config.video import DEADLINE_CODECS, SPEED_PRESET_CODECS, WEB_PROFILE_CODECS
from ..domain.exceptions import (
    EncodeFailed,
    OutputWriteFailed,
    SourceUnavailable,
    SpawnFailed,
    TaskCancelledError,
    TaskError,
)
from ..domain.media import parse_duration
from ..domain.preset import QUALITY_CRF, AdvancedOverrides, Preset, parse_resolution
from ..domain.task import Task
from ..utils.ffmpeg_utils import EncoderRunner

PROGRESS_TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
DURATION_RE = re.compile(r"Duration:\s*(\d+:\d{2}:\d{2}(?:\.\d+)?)")

ProgressCallback = Callable[[float], None]


@dataclass
class Invocation:
    """
    One encoder run.

    The strategy-internal percentage (0-100 for this run) is mapped onto the
    task's percentage as ``offset + percent * scale``. `completion_percent`,
    when set, is reported once the run exits successfully.
    """

    args: List[str]
    label: str = "encode"
    progress_offset: float = 0.0
    progress_scale: float = 1.0
    completion_percent: Optional[float] = None
    failure_prefix: str = ""


@dataclass
class _EncodeParams:
    video_codec: str
    resolution: str
    preserve_aspect_ratio: bool = False
    crf: Optional[int] = None
    video_bitrate: Optional[str] = None
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    fps: Optional[int] = None
    speed: Optional[str] = None
    fast_start: bool = False
    optimize_for_web: bool = False


def _scale_filter(resolution: str, preserve_aspect_ratio: bool) -> Optional[str]:
    size = parse_resolution(resolution)
    if size is None:
        return None
    width, height = size
    if preserve_aspect_ratio:
        return (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
        )
    return f"scale={width}:{height}"


def _target_height(resolution: str) -> Optional[int]:
    size = parse_resolution(resolution)
    return size[1] if size else None


class EncoderStrategy:
    """
    Base class holding the argument building, progress parsing and process
    supervision shared by all strategies.
    """

    name = "base"

    def __init__(self, stderr_tail_lines: int = STDERR_TAIL_LINES, temp_work_dir: Optional[Path] = None):
        self.stderr_tail_lines = stderr_tail_lines
        self.temp_work_dir = temp_work_dir
        self.total_units: Optional[float] = None

    # --- Argument building ---

    def _params(self, preset: Preset, overrides: AdvancedOverrides) -> _EncodeParams:
        raise NotImplementedError("Subclasses must implement _params().")

    def build_invocations(
        self, task: Task, preset: Preset, overrides: Optional[AdvancedOverrides] = None
    ) -> List[Invocation]:
        """Builds the ordered list of encoder invocations for `task`."""
        params = self._params(preset, overrides or AdvancedOverrides())
        args = self._input_args(task)
        args += self._video_args(params)
        args += self._quality_args(params)
        args += self._audio_args(params, task.keep_audio)
        args += self._container_args(params)
        args.append(str(task.output_path))
        return [Invocation(args=args)]

    @staticmethod
    def _input_args(task: Task) -> List[str]:
        return ["-hide_banner", "-nostdin", "-y", "-i", str(task.source)]

    @staticmethod
    def _video_args(params: _EncodeParams) -> List[str]:
        args = ["-c:v", params.video_codec]
        scale = _scale_filter(params.resolution, params.preserve_aspect_ratio)
        if scale:
            args += ["-vf", scale]
        if params.fps:
            args += ["-r", str(params.fps)]
        if params.speed:
            if params.video_codec in SPEED_PRESET_CODECS:
                args += ["-preset", params.speed]
            elif params.video_codec in DEADLINE_CODECS:
                args += ["-deadline", params.speed]
        if params.optimize_for_web:
            if params.video_codec in WEB_PROFILE_CODECS:
                args += ["-profile:v", "baseline", "-level", "3.0"]
            else:
                logger.warning(f"Web optimization only applies to H.264, ignored for {params.video_codec}")
        return args

    @staticmethod
    def _quality_args(params: _EncodeParams) -> List[str]:
        if params.video_bitrate:
            return ["-b:v", params.video_bitrate]
        if params.crf is not None:
            args = ["-crf", str(params.crf)]
            if params.video_codec in DEADLINE_CODECS:
                # VP9 only runs in constant-quality mode with a zero target bitrate.
                args += ["-b:v", "0"]
            return args
        return []

    @staticmethod
    def _audio_args(params: _EncodeParams, keep_audio: bool) -> List[str]:
        if not keep_audio:
            return ["-an"]
        return ["-c:a", params.audio_codec, "-b:a", params.audio_bitrate]

    @staticmethod
    def _container_args(params: _EncodeParams) -> List[str]:
        return ["-movflags", "+faststart"] if params.fast_start else []

    # --- Progress ---

    def estimate_total_units(self, source_duration: Optional[float]) -> Optional[float]:
        """
        Sets the basis progress is measured against: the source duration in
        seconds. None means "unknown yet"; the basis may then be learned from
        the encoder's own `Duration:` header.
        """
        self.total_units = source_duration if source_duration and source_duration > 0 else None
        return self.total_units

    def parse_progress(self, raw_line: str) -> Optional[float]:
        """
        Maps one line of encoder output to a percentage of the current run.

        Returns:
            A value in [0, 99.9], or None if the line carries no usable progress.
        """
        if self.total_units is None:
            header = DURATION_RE.search(raw_line)
            if header:
                self.estimate_total_units(parse_duration(header.group(1)))
                return None
        match = PROGRESS_TIME_RE.search(raw_line)
        if not match or not self.total_units:
            return None
        hours, minutes, seconds = match.groups()
        elapsed = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        return min(max(elapsed / self.total_units * 100.0, 0.0), RUNNING_PERCENT_CEILING)

    # --- Execution ---

    def execute(
        self,
        task: Task,
        runner: EncoderRunner,
        on_progress: ProgressCallback,
        source_duration: Optional[float] = None,
    ) -> Path:
        """
        Runs every invocation of `task` in order and verifies the output.

        Returns:
            The output path.

        Raises:
            TaskError: On any task-scoped failure.
            TaskCancelledError: If the task was cancelled before or during a run.
        """
        self.estimate_total_units(source_duration)
        invocations = self.build_invocations(task, task.preset, task.overrides)
        self._run_all(task, runner, invocations, on_progress)
        return self._verify_output(task)

    def _run_all(
        self,
        task: Task,
        runner: EncoderRunner,
        invocations: List[Invocation],
        on_progress: ProgressCallback,
    ) -> None:
        for invocation in invocations:
            self._run_invocation(task, runner, invocation, on_progress)
            if invocation.completion_percent is not None:
                on_progress(invocation.completion_percent)

    def _run_invocation(
        self,
        task: Task,
        runner: EncoderRunner,
        invocation: Invocation,
        on_progress: ProgressCallback,
    ) -> None:
        if task.cancel_requested:
            raise TaskCancelledError(f"{task.key} cancelled before {invocation.label}")

        try:
            process = runner.spawn(invocation.args)
        except OSError as e:
            raise SpawnFailed(f"Could not start encoder '{runner.ffmpeg_command[0]}': {e}") from e

        task.attach_process(process)
        tail = deque(maxlen=self.stderr_tail_lines)
        try:
            for line in process.stderr:
                line = line.strip()
                if not line:
                    continue
                if PROGRESS_TIME_RE.search(line):
                    percent = self.parse_progress(line)
                    if percent is not None:
                        logger.trace(f"{task.key} {invocation.label}: {percent:.1f}%")
                        on_progress(invocation.progress_offset + percent * invocation.progress_scale)
                else:
                    self.parse_progress(line)
                    tail.append(line)
            return_code = process.wait()
        finally:
            task.detach_process()
            if process.stderr:
                process.stderr.close()

        if return_code != 0:
            if task.cancel_requested:
                raise TaskCancelledError(f"{task.key} cancelled during {invocation.label}")
            raise classify_failure(task, return_code, list(tail), prefix=invocation.failure_prefix)
        logger.debug(f"{task.key} {invocation.label} finished")

    @staticmethod
    def _verify_output(task: Task) -> Path:
        output = task.output_path
        if not output.is_file():
            raise OutputWriteFailed(f"Encoder reported success but no output was written to {output}")
        if output.stat().st_size == 0:
            raise OutputWriteFailed(f"Encoder reported success but the output is empty: {output}")
        return output


class BasicStrategy(EncoderStrategy):
    """One invocation with the preset's fixed quality parameter."""

    name = "basic"

    def _params(self, preset: Preset, overrides: AdvancedOverrides) -> _EncodeParams:
        height = _target_height(preset.resolution)
        return _EncodeParams(
            video_codec=preset.video_codec,
            resolution=preset.resolution,
            crf=preset.quality.crf if preset.quality.kind == QUALITY_CRF else None,
            video_bitrate=preset.quality.bitrate_for_height(height),
            audio_codec=preset.audio_codec,
            audio_bitrate=preset.audio_bitrate,
            fps=preset.fps,
            speed=preset.speed,
        )


class SinglePassStrategy(EncoderStrategy):
    """One invocation with explicit parameters from the preset plus overrides."""

    name = "single-pass"

    def _params(self, preset: Preset, overrides: AdvancedOverrides) -> _EncodeParams:
        resolution = overrides.resolution or preset.resolution
        if overrides.video_bitrate:
            crf, bitrate = None, overrides.video_bitrate
        elif overrides.crf is not None:
            crf, bitrate = overrides.crf, None
        elif preset.quality.kind == QUALITY_CRF:
            crf, bitrate = preset.quality.crf, None
        else:
            crf, bitrate = None, preset.quality.bitrate_for_height(_target_height(resolution))
        return _EncodeParams(
            video_codec=preset.video_codec,
            resolution=resolution,
            preserve_aspect_ratio=overrides.preserve_aspect_ratio,
            crf=crf,
            video_bitrate=bitrate,
            audio_codec=preset.audio_codec,
            audio_bitrate=overrides.audio_bitrate or preset.audio_bitrate,
            fps=overrides.fps or preset.fps,
            speed=preset.speed,
            fast_start=overrides.fast_start,
            optimize_for_web=overrides.optimize_for_web,
        )


class TwoPassStrategy(SinglePassStrategy):
    """
    Analysis pass + encode pass at a target bitrate.

    The statistics file ffmpeg writes between the passes lives in a private
    temporary directory that is removed when the task ends, whatever the
    outcome.
    """

    name = "two-pass"

    def _params(self, preset: Preset, overrides: AdvancedOverrides) -> _EncodeParams:
        params = super()._params(preset, overrides)
        if not params.video_bitrate:
            params.video_bitrate = preset.quality.bitrate_for_height(_target_height(params.resolution))
        if not params.video_bitrate:
            raise ValueError(f"Two-pass encoding with preset '{preset.id}' needs a target bitrate")
        params.crf = None
        return params

    def build_invocations(
        self,
        task: Task,
        preset: Preset,
        overrides: Optional[AdvancedOverrides] = None,
        passlog_prefix: Optional[str] = None,
    ) -> List[Invocation]:
        params = self._params(preset, overrides or AdvancedOverrides())
        if passlog_prefix is None:
            passlog_prefix = str(task.output_path.with_name(task.output_path.stem + "_2pass"))

        common = self._input_args(task) + self._video_args(params) + self._quality_args(params)

        first_pass = common + ["-pass", "1", "-passlogfile", passlog_prefix, "-an", "-f", "null", os.devnull]
        second_pass = (
            common
            + ["-pass", "2", "-passlogfile", passlog_prefix]
            + self._audio_args(params, task.keep_audio)
            + self._container_args(params)
            + [str(task.output_path)]
        )
        return [
            Invocation(
                args=first_pass,
                label="pass 1",
                progress_offset=0.0,
                progress_scale=0.5,
                completion_percent=50.0,
                failure_prefix="First pass failed: ",
            ),
            Invocation(
                args=second_pass,
                label="pass 2",
                progress_offset=50.0,
                progress_scale=0.5,
                failure_prefix="Second pass failed: ",
            ),
        ]

    def execute(
        self,
        task: Task,
        runner: EncoderRunner,
        on_progress: ProgressCallback,
        source_duration: Optional[float] = None,
    ) -> Path:
        self.estimate_total_units(source_duration)
        try:
            work_dir = Path(tempfile.mkdtemp(prefix=".clipcrunch_2pass_", dir=self.temp_work_dir))
        except OSError as e:
            raise OutputWriteFailed(f"Cannot create a two-pass statistics directory in {self.temp_work_dir}: {e}") from e
        try:
            invocations = self.build_invocations(
                task, task.preset, task.overrides, passlog_prefix=str(work_dir / "passlog")
            )
            self._run_all(task, runner, invocations, on_progress)
            return self._verify_output(task)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            logger.trace(f"Removed two-pass statistics directory {work_dir}")


def select_strategy(
    preset: Preset,
    overrides: Optional[AdvancedOverrides] = None,
    stderr_tail_lines: int = STDERR_TAIL_LINES,
    temp_work_dir: Optional[Path] = None,
) -> EncoderStrategy:
    """
    Picks the strategy for a preset and the caller's overrides.

    An explicit `two_pass` override wins over the preset's own flag. Without
    two-pass, any encoding override selects the single-pass strategy and no
    overrides select the basic one.
    """
    overrides = overrides or AdvancedOverrides()
    two_pass = overrides.two_pass if overrides.two_pass is not None else preset.is_two_pass
    if two_pass:
        strategy_cls = TwoPassStrategy
    elif overrides.has_encoding_overrides():
        strategy_cls = SinglePassStrategy
    else:
        strategy_cls = BasicStrategy
    return strategy_cls(stderr_tail_lines=stderr_tail_lines, temp_work_dir=temp_work_dir)


def classify_failure(task: Task, return_code: int, stderr_tail: List[str], prefix: str = "") -> TaskError:
    """
    Turns a non-zero exit into the most specific task error.

    The detail string is built from the last lines the encoder printed so that
    it is enough to diagnose the problem without the full log.
    """
    source = task.source
    if not source.is_file() or not os.access(source, os.R_OK):
        return SourceUnavailable(f"{prefix}Source file became unavailable: {source}")

    text = "\n".join(stderr_tail).lower()
    last_line = stderr_tail[-1] if stderr_tail else "no error output"

    if "no space left" in text or "disk full" in text:
        return OutputWriteFailed(f"{prefix}Not enough disk space to write {task.output_path.name}: {last_line}")
    if "permission denied" in text or "access denied" in text:
        return OutputWriteFailed(f"{prefix}Permission denied writing {task.output_path}: {last_line}")

    detail = f"{prefix}Encoder exited with code {return_code}: {last_line}"
    if "unknown encoder" in text or "encoder not found" in text or "error while opening encoder" in text:
        detail += (
            f" (the '{task.preset.video_codec}' codec may be unavailable in this ffmpeg build;"
            f" try a preset with a software codec such as libx264)"
        )
    return EncodeFailed(return_code, detail, stderr_tail)
