"""Tests for argument building, progress parsing and execution of encoder strategies."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from clipcrunch.domain.exceptions import (
    EncodeFailed,
    OutputWriteFailed,
    SourceUnavailable,
    SpawnFailed,
    TaskCancelledError,
)
from clipcrunch.domain.preset import AdvancedOverrides, Preset, QualityMode
from clipcrunch.domain.task import Task, make_task_key
from clipcrunch.services.encoder_strategies import (
    BasicStrategy,
    SinglePassStrategy,
    TwoPassStrategy,
    classify_failure,
    select_strategy,
)
from clipcrunch.utils.ffmpeg_utils import EncoderRunner


def _task(source, preset: Preset, output_path, keep_audio=True, overrides=None) -> Task:
    return Task(
        key=make_task_key(source, preset.id, keep_audio),
        source=Path(source),
        preset=preset,
        output_path=Path(output_path),
        keep_audio=keep_audio,
        overrides=overrides,
    )


def _flag_value(args, flag):
    return args[args.index(flag) + 1]


class TestSelectStrategy:
    def test_no_overrides_is_basic(self, single_pass_preset):
        assert isinstance(select_strategy(single_pass_preset), BasicStrategy)
        assert isinstance(select_strategy(single_pass_preset, AdvancedOverrides(keep_audio=False)), BasicStrategy)

    def test_overrides_select_single_pass(self, single_pass_preset):
        assert isinstance(select_strategy(single_pass_preset, AdvancedOverrides(fps=24)), SinglePassStrategy)

    def test_two_pass_preset(self, two_pass_preset):
        assert isinstance(select_strategy(two_pass_preset), TwoPassStrategy)

    def test_override_disables_two_pass(self, two_pass_preset):
        strategy = select_strategy(two_pass_preset, AdvancedOverrides(two_pass=False))
        assert type(strategy) is SinglePassStrategy

    def test_override_enables_two_pass(self, single_pass_preset):
        overrides = AdvancedOverrides(two_pass=True, video_bitrate="1500k")
        assert isinstance(select_strategy(single_pass_preset, overrides), TwoPassStrategy)


class TestBuildInvocations:
    def test_basic_arguments(self, single_pass_preset):
        task = _task("/in/clip.mov", single_pass_preset, "/out/Single/clip_sp.mp4")
        [invocation] = BasicStrategy().build_invocations(task, single_pass_preset)
        assert invocation.args == [
            "-hide_banner", "-nostdin", "-y", "-i", str(Path("/in/clip.mov")),
            "-c:v", "libx264",
            "-vf", "scale=1280:720",
            "-preset", "veryfast",
            "-crf", "26",
            "-c:a", "aac", "-b:a", "128k",
            str(Path("/out/Single/clip_sp.mp4")),
        ]

    def test_source_resolution_has_no_scale_filter(self):
        preset = Preset(id="vp9", name="VP9", video_codec="libvpx-vp9", quality=QualityMode.constant(31), speed="good")
        task = _task("/in/clip.mov", preset, "/out/clip.webm", keep_audio=False)
        [invocation] = BasicStrategy().build_invocations(task, preset)
        args = invocation.args
        assert "-vf" not in args
        assert _flag_value(args, "-deadline") == "good"
        assert _flag_value(args, "-crf") == "31"
        assert _flag_value(args, "-b:v") == "0"
        assert "-an" in args
        assert "-c:a" not in args

    def test_overrides_are_applied(self, single_pass_preset):
        overrides = AdvancedOverrides(
            resolution="640x360",
            preserve_aspect_ratio=True,
            fps=24,
            video_bitrate="900k",
            audio_bitrate="96k",
            fast_start=True,
            optimize_for_web=True,
        )
        task = _task("/in/clip.mov", single_pass_preset, "/out/clip.mp4", overrides=overrides)
        [invocation] = SinglePassStrategy().build_invocations(task, single_pass_preset, overrides)
        args = invocation.args
        assert _flag_value(args, "-vf") == (
            "scale=640:360:force_original_aspect_ratio=decrease,pad=640:360:(ow-iw)/2:(oh-ih)/2"
        )
        assert _flag_value(args, "-r") == "24"
        assert _flag_value(args, "-b:v") == "900k"
        assert "-crf" not in args
        assert _flag_value(args, "-b:a") == "96k"
        assert _flag_value(args, "-profile:v") == "baseline"
        assert _flag_value(args, "-level") == "3.0"
        assert _flag_value(args, "-movflags") == "+faststart"
        assert args[-1] == str(Path("/out/clip.mp4"))

    def test_crf_override_replaces_preset_crf(self, single_pass_preset):
        overrides = AdvancedOverrides(crf=20)
        task = _task("/in/clip.mov", single_pass_preset, "/out/clip.mp4")
        [invocation] = SinglePassStrategy().build_invocations(task, single_pass_preset, overrides)
        assert _flag_value(invocation.args, "-crf") == "20"

    def test_web_profile_ignored_for_other_codecs(self):
        preset = Preset(id="hevc", name="HEVC", video_codec="libx265", quality=QualityMode.constant(28))
        task = _task("/in/clip.mov", preset, "/out/clip.mp4")
        [invocation] = SinglePassStrategy().build_invocations(
            task, preset, AdvancedOverrides(optimize_for_web=True)
        )
        assert "-profile:v" not in invocation.args

    def test_ladder_bitrate_follows_target_height(self, two_pass_preset):
        overrides = AdvancedOverrides(resolution="854x480", two_pass=False)
        task = _task("/in/clip.mov", two_pass_preset, "/out/clip.mp4")
        [invocation] = SinglePassStrategy().build_invocations(task, two_pass_preset, overrides)
        assert _flag_value(invocation.args, "-b:v") == "800k"

    def test_two_pass_invocations(self, two_pass_preset):
        task = _task("/in/clip.mov", two_pass_preset, "/out/Double/clip_tp.mp4")
        first, second = TwoPassStrategy().build_invocations(task, two_pass_preset, passlog_prefix="/work/passlog")

        assert _flag_value(first.args, "-pass") == "1"
        assert _flag_value(first.args, "-passlogfile") == "/work/passlog"
        assert _flag_value(first.args, "-b:v") == "2000k"
        assert "-an" in first.args
        assert _flag_value(first.args, "-f") == "null"
        assert first.args[-1] == os.devnull
        assert (first.progress_offset, first.progress_scale, first.completion_percent) == (0.0, 0.5, 50.0)
        assert first.failure_prefix == "First pass failed: "

        assert _flag_value(second.args, "-pass") == "2"
        assert _flag_value(second.args, "-passlogfile") == "/work/passlog"
        assert _flag_value(second.args, "-b:v") == "2000k"
        assert _flag_value(second.args, "-c:a") == "aac"
        assert second.args[-1] == str(Path("/out/Double/clip_tp.mp4"))
        assert (second.progress_offset, second.progress_scale) == (50.0, 0.5)

    def test_two_pass_never_uses_crf(self, single_pass_preset):
        overrides = AdvancedOverrides(two_pass=True, video_bitrate="1500k", crf=18)
        task = _task("/in/clip.mov", single_pass_preset, "/out/clip.mp4")
        invocations = TwoPassStrategy().build_invocations(task, single_pass_preset, overrides, "/work/p")
        for invocation in invocations:
            assert "-crf" not in invocation.args
            assert _flag_value(invocation.args, "-b:v") == "1500k"


class TestParseProgress:
    def test_known_duration(self):
        strategy = BasicStrategy()
        strategy.estimate_total_units(200.0)
        line = "frame= 2400 fps= 60 q=28.0 size=  4096kB time=00:01:40.00 bitrate= 335.5kbits/s speed=2.5x"
        assert strategy.parse_progress(line) == pytest.approx(50.0)

    def test_duration_learned_from_header(self):
        strategy = BasicStrategy()
        strategy.estimate_total_units(None)
        assert strategy.parse_progress("  Duration: 00:00:20.00, start: 0.000000, bitrate: 900 kb/s") is None
        assert strategy.parse_progress("frame=150 time=00:00:05.00 bitrate=1.0") == pytest.approx(25.0)

    def test_unknown_duration_gives_nothing(self):
        strategy = BasicStrategy()
        assert strategy.parse_progress("frame=150 time=00:00:05.00 bitrate=1.0") is None

    def test_non_progress_lines(self):
        strategy = BasicStrategy()
        strategy.estimate_total_units(10.0)
        assert strategy.parse_progress("Stream mapping:") is None
        assert strategy.parse_progress("frame=0 time=N/A bitrate=N/A") is None

    def test_clamped_below_100(self):
        strategy = BasicStrategy()
        strategy.estimate_total_units(10.0)
        assert strategy.parse_progress("time=00:00:12.00") == 99.9

    def test_zero_duration_is_unknown(self):
        strategy = BasicStrategy()
        assert strategy.estimate_total_units(0.0) is None


class TestClassifyFailure:
    def test_missing_source(self, tmp_path, single_pass_preset):
        task = _task(tmp_path / "gone.mp4", single_pass_preset, tmp_path / "out.mp4")
        error = classify_failure(task, 1, ["gone.mp4: No such file or directory"])
        assert isinstance(error, SourceUnavailable)

    def test_disk_full(self, make_source, tmp_path, single_pass_preset):
        task = _task(make_source("a.mp4"), single_pass_preset, tmp_path / "out.mp4")
        error = classify_failure(task, 1, ["av_interleaved_write_frame(): No space left on device"])
        assert isinstance(error, OutputWriteFailed)
        assert "No space left" in error.detail

    def test_permission_denied(self, make_source, tmp_path, single_pass_preset):
        task = _task(make_source("a.mp4"), single_pass_preset, tmp_path / "out.mp4")
        error = classify_failure(task, 1, ["/out/x.mp4: Permission denied"])
        assert isinstance(error, OutputWriteFailed)

    def test_unknown_encoder_hint(self, make_source, tmp_path):
        preset = Preset(id="vt", name="VT", video_codec="h264_videotoolbox", quality=QualityMode.target("3000k"))
        task = _task(make_source("a.mp4"), preset, tmp_path / "out.mp4")
        error = classify_failure(task, 8, ["Unknown encoder 'h264_videotoolbox'"], prefix="First pass failed: ")
        assert isinstance(error, EncodeFailed)
        assert error.exit_code == 8
        assert error.detail.startswith("First pass failed: ")
        assert "h264_videotoolbox" in error.detail
        assert "libx264" in error.detail

    def test_generic_failure_keeps_tail(self, make_source, tmp_path, single_pass_preset):
        task = _task(make_source("a.mp4"), single_pass_preset, tmp_path / "out.mp4")
        error = classify_failure(task, 1, ["broken frame", "Conversion failed!"])
        assert isinstance(error, EncodeFailed)
        assert error.stderr_tail == ["broken frame", "Conversion failed!"]
        assert "Conversion failed!" in error.detail


class TestExecute:
    def test_single_pass_run(self, fake_encoder, make_source, tmp_path, single_pass_preset):
        output = tmp_path / "clip.mp4"
        task = _task(make_source("clip.mp4"), single_pass_preset, output)
        progress = []

        result = BasicStrategy().execute(task, EncoderRunner(fake_encoder), progress.append)

        assert result == output
        assert output.stat().st_size > 0
        assert progress[0] == pytest.approx(10.0)
        assert progress == sorted(progress)
        assert max(progress) == 99.9

    def test_probed_duration_is_used(self, fake_encoder, make_source, tmp_path, single_pass_preset):
        task = _task(make_source("noduration.mp4"), single_pass_preset, tmp_path / "out.mp4")
        progress = []
        BasicStrategy().execute(task, EncoderRunner(fake_encoder), progress.append, source_duration=20.0)
        assert progress[0] == pytest.approx(5.0)
        assert progress[-1] == pytest.approx(50.0)

    def test_no_duration_means_no_progress(self, fake_encoder, make_source, tmp_path, single_pass_preset):
        task = _task(make_source("noduration.mp4"), single_pass_preset, tmp_path / "out.mp4")
        progress = []
        BasicStrategy().execute(task, EncoderRunner(fake_encoder), progress.append)
        assert progress == []
        assert task.output_path.is_file()

    def test_two_pass_run_cleans_statistics(
        self, fake_encoder, make_source, tmp_path, two_pass_preset, invocation_log
    ):
        work_dir = tmp_path / "work"
        work_dir.mkdir()
        task = _task(make_source("clip.mp4"), two_pass_preset, tmp_path / "out.mp4")
        progress = []

        TwoPassStrategy(temp_work_dir=work_dir).execute(task, EncoderRunner(fake_encoder), progress.append)

        runs = invocation_log.read_text(encoding="utf-8").splitlines()
        assert len(runs) == 2
        assert "-pass 1" in runs[0]
        assert "-pass 2" in runs[1]
        assert 50.0 in progress
        assert all(p < 50.0 for p in progress[: progress.index(50.0)])
        assert progress[-1] > 90.0
        assert list(work_dir.iterdir()) == []

    def test_failed_first_pass_skips_second(
        self, fake_encoder, make_source, tmp_path, two_pass_preset, invocation_log
    ):
        work_dir = tmp_path / "work"
        work_dir.mkdir()
        task = _task(make_source("fail.mp4"), two_pass_preset, tmp_path / "out.mp4")

        with pytest.raises(EncodeFailed) as excinfo:
            TwoPassStrategy(temp_work_dir=work_dir).execute(task, EncoderRunner(fake_encoder), lambda p: None)

        assert excinfo.value.detail.startswith("First pass failed: ")
        assert excinfo.value.exit_code == 1
        assert len(invocation_log.read_text(encoding="utf-8").splitlines()) == 1
        assert list(work_dir.iterdir()) == []

    def test_missing_work_dir_is_an_output_failure(
        self, fake_encoder, make_source, tmp_path, two_pass_preset, invocation_log
    ):
        task = _task(make_source("clip.mp4"), two_pass_preset, tmp_path / "out.mp4")
        strategy = TwoPassStrategy(temp_work_dir=tmp_path / "gone")

        with pytest.raises(OutputWriteFailed) as excinfo:
            strategy.execute(task, EncoderRunner(fake_encoder), lambda p: None)

        assert "two-pass statistics directory" in excinfo.value.detail
        assert not invocation_log.exists()

    def test_encoder_failure(self, fake_encoder, make_source, tmp_path, single_pass_preset):
        task = _task(make_source("fail.mp4"), single_pass_preset, tmp_path / "out.mp4")
        with pytest.raises(EncodeFailed) as excinfo:
            BasicStrategy().execute(task, EncoderRunner(fake_encoder), lambda p: None)
        assert "Conversion failed!" in excinfo.value.detail

    def test_success_without_output(self, fake_encoder, make_source, tmp_path, single_pass_preset):
        task = _task(make_source("nooutput.mp4"), single_pass_preset, tmp_path / "out.mp4")
        with pytest.raises(OutputWriteFailed):
            BasicStrategy().execute(task, EncoderRunner(fake_encoder), lambda p: None)

    def test_missing_executable(self, make_source, tmp_path, single_pass_preset):
        task = _task(make_source("clip.mp4"), single_pass_preset, tmp_path / "out.mp4")
        runner = EncoderRunner([str(tmp_path / "no-such-ffmpeg")])
        with pytest.raises(SpawnFailed):
            BasicStrategy().execute(task, runner, lambda p: None)

    def test_cancelled_before_start(self, fake_encoder, make_source, tmp_path, single_pass_preset, invocation_log):
        task = _task(make_source("clip.mp4"), single_pass_preset, tmp_path / "out.mp4")
        task.request_cancel(grace_period=1.0)
        with pytest.raises(TaskCancelledError):
            BasicStrategy().execute(task, EncoderRunner(fake_encoder), lambda p: None)
        assert not invocation_log.exists()
