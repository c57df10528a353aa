"""Tests for argument parsing and the CLI entry point."""

from __future__ import annotations

import functools

import pytest
import yaml

from clipcrunch import main as main_module
from clipcrunch.cli import collect_input_files, get_args, overrides_from_args
from clipcrunch.config.common import REPORT_FILE_NAME
from clipcrunch.pipeline.batch_pipeline import BatchCompressionPipeline


class TestGetArgs:
    def test_defaults(self):
        args = get_args([])
        assert args.inputs == []
        assert args.presets == []
        assert args.keep_audio is None
        assert args.two_pass is None
        assert args.output_dir == "compressed"
        assert args.report is None
        assert args.log_level == "INFO"

    def test_repeated_presets(self):
        assert get_args(["a.mp4", "-p", "web", "--preset", "webm-modern"]).presets == ["web", "webm-modern"]

    def test_report_without_path(self):
        assert get_args(["--report"]).report == ""
        assert get_args(["--report", "out/r.yaml"]).report == "out/r.yaml"

    def test_audio_flags(self):
        assert get_args(["--keep-audio"]).keep_audio is True
        assert get_args(["--no-audio"]).keep_audio is False
        with pytest.raises(SystemExit):
            get_args(["--keep-audio", "--no-audio"])

    def test_invalid_process_count(self):
        with pytest.raises(SystemExit):
            get_args(["--processes", "0"])

    def test_temp_work_dir_is_created(self, tmp_path):
        args = get_args(["--temp-work-dir", str(tmp_path / "scratch")])
        assert args.temp_work_dir == (tmp_path / "scratch").resolve()
        assert args.temp_work_dir.is_dir()


class TestOverridesFromArgs:
    def test_none_given(self):
        assert overrides_from_args(get_args(["--no-audio"])) is None

    def test_values_are_collected(self):
        overrides = overrides_from_args(
            get_args(["--crf", "20", "--fps", "30", "--resolution", "1280x720", "--fast-start", "--single-pass"])
        )
        assert overrides.crf == 20
        assert overrides.fps == 30
        assert overrides.resolution == "1280x720"
        assert overrides.fast_start
        assert overrides.two_pass is False
        assert overrides.keep_audio is None


class TestCollectInputFiles:
    def test_directories_are_scanned(self, tmp_path):
        (tmp_path / "sub").mkdir()
        for name in ["b.mp4", "notes.txt", "sub/a.MOV"]:
            (tmp_path / name).write_bytes(b"x")
        files = collect_input_files([str(tmp_path)])
        assert files == sorted([tmp_path / "b.mp4", tmp_path / "sub" / "a.MOV"])

    def test_explicit_files_and_missing_paths(self, tmp_path):
        odd = tmp_path / "recording.bin"
        odd.write_bytes(b"x")
        files = collect_input_files([str(odd), str(tmp_path / "missing.mp4")])
        assert files == [odd]


@pytest.fixture
def fake_pipeline(monkeypatch, fake_encoder):
    """Makes main() run batches through the fake encoder."""
    factory = functools.partial(_pipeline_with_fake_encoder, fake_encoder)
    monkeypatch.setattr(main_module, "BatchCompressionPipeline", factory)
    monkeypatch.setattr(main_module, "verify_ffmpeg", lambda ffmpeg_cmd=None: True)


def _pipeline_with_fake_encoder(fake_encoder, catalog, **kwargs):
    kwargs.update(ffmpeg_command=fake_encoder, duration_probe=lambda path: None)
    return BatchCompressionPipeline(catalog, **kwargs)


class TestMain:
    def test_list_presets(self, tmp_path, capsys):
        code = main_module.main(["--list-presets", "--custom-presets", str(tmp_path / "custom.yaml")])
        assert code == 0
        out = capsys.readouterr().out
        assert "web" in out
        assert "streaming-2pass" in out

    def test_no_inputs(self, tmp_path):
        assert main_module.main(["--custom-presets", str(tmp_path / "custom.yaml")]) == 2

    def test_add_and_remove_custom_preset(self, tmp_path, capsys):
        store = tmp_path / "custom.yaml"
        definition = tmp_path / "mine.yaml"
        definition.write_text(
            yaml.safe_dump(
                {"id": "mine", "name": "Mine", "video_codec": "libx264", "resolution": "1280x720",
                 "quality": {"kind": "crf", "crf": 24}}
            ),
            encoding="utf-8",
        )

        assert main_module.main(["--custom-presets", str(store), "--add-preset", str(definition)]) == 0
        assert yaml.safe_load(store.read_text(encoding="utf-8"))["presets"][0]["id"] == "mine"

        main_module.main(["--custom-presets", str(store), "--list-presets"])
        assert "mine" in capsys.readouterr().out

        assert main_module.main(["--custom-presets", str(store), "--remove-preset", "mine"]) == 0
        assert yaml.safe_load(store.read_text(encoding="utf-8"))["presets"] == []

    def test_builtin_preset_cannot_be_removed(self, tmp_path):
        assert main_module.main(["--custom-presets", str(tmp_path / "c.yaml"), "--remove-preset", "web"]) == 2

    def test_unknown_preset(self, tmp_path, make_source, fake_pipeline):
        code = main_module.main(
            [str(make_source("a.mp4")), "-p", "nope", "--custom-presets", str(tmp_path / "c.yaml")]
        )
        assert code == 2

    def test_batch_with_report(self, tmp_path, make_source, fake_pipeline):
        out = tmp_path / "out"
        code = main_module.main(
            [
                str(make_source("a.mp4")),
                "-o", str(out),
                "--report",
                "--custom-presets", str(tmp_path / "c.yaml"),
            ]
        )
        assert code == 0
        assert (out / "Web" / "a.mp4").is_file()
        entries = yaml.safe_load((out / REPORT_FILE_NAME).read_text(encoding="utf-8"))
        assert entries[0]["completed"] == 1

    def test_failed_task_sets_exit_code(self, tmp_path, make_source, fake_pipeline):
        code = main_module.main(
            [
                str(make_source("fail.mp4")),
                str(make_source("b.mp4")),
                "-o", str(tmp_path / "out"),
                "--custom-presets", str(tmp_path / "c.yaml"),
            ]
        )
        assert code == 1
