"""Shared fixtures: a stand-in ffmpeg script, source files and pipeline factories."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Callable, List

import pytest

from clipcrunch.domain.preset import Preset, QualityMode
from clipcrunch.pipeline.batch_pipeline import BatchCompressionPipeline
from clipcrunch.services.preset_catalog import PresetCatalog

# Behaves like ffmpeg as far as the engine can tell: prints a Duration header
# and carriage-return separated progress lines to stderr, honours -pass /
# -passlogfile / -f null and writes the last argument as the output file.
# The source filename selects special behaviour:
#   "fail"       -> error message and exit code 1 (during the first run)
#   "slow"       -> keeps running for a long time (for cancellation tests)
#   "nooutput"   -> exits 0 without writing anything
#   "noduration" -> omits the Duration header
#   "jitter"     -> reports a lower time after a higher one
FAKE_ENCODER_SOURCE = textwrap.dedent(
    '''
    import os
    import sys
    import time

    args = sys.argv[1:]
    log_path = os.environ.get("FAKE_ENCODER_LOG")
    if log_path:
        with open(log_path, "a", encoding="utf-8") as log:
            log.write(" ".join(args) + "\\n")

    src = args[args.index("-i") + 1]
    out = args[-1]
    name = os.path.basename(src)
    pass_no = args[args.index("-pass") + 1] if "-pass" in args else None
    null_output = "-f" in args and args[args.index("-f") + 1] == "null"

    if not os.path.exists(src):
        sys.stderr.write(src + ": No such file or directory\\n")
        sys.exit(1)

    sys.stderr.write("Input #0, mov,mp4,m4a,3gp,3g2,mj2, from '" + src + "':\\n")
    if "noduration" not in name:
        sys.stderr.write("  Duration: 00:00:10.00, start: 0.000000, bitrate: 1000 kb/s\\n")
    sys.stderr.flush()

    if pass_no == "2":
        prefix = args[args.index("-passlogfile") + 1]
        if not os.path.exists(prefix + "-0.log"):
            sys.stderr.write("ratecontrol_init: can't open stats file\\n")
            sys.exit(1)

    def progress(seconds):
        sys.stderr.write(
            "frame=%5d fps= 30 q=28.0 size=   256kB time=00:00:%05.2f bitrate= 800.0kbits/s speed=2x\\r"
            % (int(seconds * 30), seconds)
        )
        sys.stderr.flush()

    if "slow" in name:
        progress(1.0)
        for _ in range(600):
            time.sleep(0.05)
        sys.exit(0)

    steps = [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0]
    if "jitter" in name:
        steps = [1.0, 4.0, 3.0, 6.0, 5.0, 10.0]
    for seconds in steps:
        if "fail" in name and seconds > 3.0:
            sys.stderr.write("\\n[libx264 @ 0x55d0] broken frame\\n")
            sys.stderr.write("Conversion failed!\\n")
            sys.exit(1)
        progress(seconds)
        time.sleep(0.01)
    sys.stderr.write("\\n")

    if pass_no == "1":
        prefix = args[args.index("-passlogfile") + 1]
        with open(prefix + "-0.log", "w") as stats:
            stats.write("#options: fake\\n")
        with open(prefix + "-0.log.mbtree", "wb") as mbtree:
            mbtree.write(b"\\0" * 16)

    if not null_output and "nooutput" not in name:
        with open(out, "wb") as f:
            f.write(b"fakevideo" * 100)
    sys.exit(0)
    '''
)


@pytest.fixture
def fake_encoder(tmp_path) -> List[str]:
    """Command prefix that runs the fake encoder with the current interpreter."""
    script = tmp_path / "fake_ffmpeg.py"
    script.write_text(FAKE_ENCODER_SOURCE, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def invocation_log(tmp_path, monkeypatch) -> Path:
    """File the fake encoder appends its argument list to, one line per run."""
    log = tmp_path / "invocations.log"
    monkeypatch.setenv("FAKE_ENCODER_LOG", str(log))
    return log


@pytest.fixture
def make_source(tmp_path) -> Callable[[str], Path]:
    source_dir = tmp_path / "sources"
    source_dir.mkdir()

    def _make(name: str) -> Path:
        path = source_dir / name
        path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64)
        return path

    return _make


@pytest.fixture
def output_root(tmp_path) -> Path:
    return tmp_path / "out"


@pytest.fixture
def single_pass_preset() -> Preset:
    return Preset(
        id="sp",
        name="Single",
        folder_name="Single",
        tag="sp",
        resolution="1280x720",
        video_codec="libx264",
        quality=QualityMode.constant(26),
        speed="veryfast",
    )


@pytest.fixture
def two_pass_preset() -> Preset:
    return Preset(
        id="tp",
        name="Double",
        folder_name="Double",
        tag="tp",
        resolution="1280x720",
        video_codec="libx264",
        quality=QualityMode.bitrate_ladder([(480, "800k"), (720, "2000k")]),
        is_two_pass=True,
    )


@pytest.fixture
def catalog(single_pass_preset, two_pass_preset) -> PresetCatalog:
    return PresetCatalog(builtins=[single_pass_preset, two_pass_preset])


@pytest.fixture
def make_pipeline(fake_encoder, catalog, tmp_path) -> Callable[..., BatchCompressionPipeline]:
    work_dir = tmp_path / "work"
    work_dir.mkdir()

    def _make(**kwargs) -> BatchCompressionPipeline:
        options = dict(
            max_workers=2,
            ffmpeg_command=fake_encoder,
            grace_period=2.0,
            temp_work_dir=work_dir,
            duration_probe=lambda path: None,
            heartbeat_interval=0.05,
        )
        options.update(kwargs)
        return BatchCompressionPipeline(catalog, **options)

    return _make
