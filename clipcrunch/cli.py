"""
Command-Line Interface (CLI) setup for clipcrunch.

This module uses Python's `argparse` to define and parse the command-line
arguments, and turns the parsed encoding options into the request objects
the engine understands.
"""
import argparse
from pathlib import Path
from typing import List, Optional, Sequence

from loguru import logger

from .config.common import CUSTOM_PRESETS_PATH
from .config.video import VIDEO_EXTENSIONS
from .domain.preset import AdvancedOverrides
from .utils.format_utils import contains_any_extensions


def get_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parses command-line arguments for clipcrunch.

    Args:
        argv: Argument list to parse; `sys.argv[1:]` when None.

    Returns:
        argparse.Namespace: The parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="clipcrunch",
        description="Batch-compress video files with one or more ffmpeg presets.",
    )
    parser.add_argument(
        "inputs", nargs="*", help="Video files or directories (directories are scanned recursively)."
    )
    parser.add_argument(
        "-p", "--preset", dest="presets", action="append", default=[],
        help="Preset id to apply to every input. Repeat for several presets.",
    )
    parser.add_argument(
        "--list-presets", action="store_true", help="List available presets and exit."
    )
    parser.add_argument(
        "-o", "--output-dir", type=str, default="compressed",
        help="Directory under which one folder per preset is created.",
    )
    parser.add_argument(
        "--processes", type=int, default=None,
        help="Number of encoder processes to run at the same time.",
    )

    audio_group = parser.add_mutually_exclusive_group()
    audio_group.add_argument(
        "--keep-audio", dest="keep_audio", action="store_true", default=None,
        help="Keep the audio track for every preset.",
    )
    audio_group.add_argument(
        "--no-audio", dest="keep_audio", action="store_false",
        help="Drop the audio track for every preset.",
    )

    overrides = parser.add_argument_group("advanced overrides (applied to every selected preset)")
    overrides.add_argument("--crf", type=int, default=None, help="Constant quality value (0-51).")
    overrides.add_argument("--video-bitrate", type=str, default=None, help="Target video bitrate, e.g. 2500k.")
    overrides.add_argument("--audio-bitrate", type=str, default=None, help="Audio bitrate, e.g. 128k.")
    overrides.add_argument("--fps", type=int, default=None, help="Output frame rate (1-120).")
    overrides.add_argument("--resolution", type=str, default=None, help="Output size as WIDTHxHEIGHT.")
    overrides.add_argument(
        "--preserve-aspect-ratio", action="store_true",
        help="Fit into --resolution and pad instead of stretching.",
    )
    pass_group = overrides.add_mutually_exclusive_group()
    pass_group.add_argument(
        "--two-pass", dest="two_pass", action="store_true", default=None, help="Force two-pass encoding."
    )
    pass_group.add_argument(
        "--single-pass", dest="two_pass", action="store_false", help="Disable two-pass encoding."
    )
    overrides.add_argument(
        "--fast-start", action="store_true", help="Move the MP4 index to the front for progressive playback."
    )
    overrides.add_argument(
        "--optimize-for-web", action="store_true", help="Use the H.264 baseline profile for old devices."
    )

    custom = parser.add_argument_group("custom presets")
    custom.add_argument(
        "--custom-presets", type=str, default=str(CUSTOM_PRESETS_PATH),
        help="YAML file holding user-defined presets.",
    )
    custom.add_argument(
        "--add-preset", type=str, default=None, metavar="YAML",
        help="Add the preset described in this YAML file to the custom presets.",
    )
    custom.add_argument(
        "--remove-preset", type=str, default=None, metavar="ID", help="Remove a custom preset."
    )

    parser.add_argument(
        "--report", nargs="?", const="", default=None, metavar="PATH",
        help="Write a YAML report of the batch (default: inside the output directory).",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO", choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set the logging level.",
    )
    parser.add_argument(
        "--temp-work-dir", type=str, default=None,
        help="Directory for temporary two-pass statistics files.",
    )

    args = parser.parse_args(argv)

    if args.processes is not None and args.processes < 1:
        parser.error("--processes must be at least 1")

    # Validate temp_work_dir if provided. If it doesn't exist, try to create it.
    if args.temp_work_dir:
        temp_dir_path = Path(args.temp_work_dir)
        if not temp_dir_path.is_dir():
            try:
                temp_dir_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                parser.error(
                    f"The specified temporary working directory '{args.temp_work_dir}' "
                    f"is not a valid directory and could not be created: {e}"
                )
        args.temp_work_dir = temp_dir_path.resolve()

    return args


def overrides_from_args(args: argparse.Namespace) -> Optional[AdvancedOverrides]:
    """Builds the overrides given on the command line, or None if there are none."""
    overrides = AdvancedOverrides(
        crf=args.crf,
        video_bitrate=args.video_bitrate,
        audio_bitrate=args.audio_bitrate,
        fps=args.fps,
        resolution=args.resolution,
        preserve_aspect_ratio=args.preserve_aspect_ratio,
        two_pass=args.two_pass,
        fast_start=args.fast_start,
        optimize_for_web=args.optimize_for_web,
    )
    return overrides if overrides.has_encoding_overrides() else None


def collect_input_files(inputs: Sequence[str]) -> List[Path]:
    """
    Expands the positional inputs into a list of video files.

    Files are taken as given (any extension); directories contribute every
    file with a known video extension, sorted by path.
    """
    files: List[Path] = []
    for raw in inputs:
        path = Path(raw).expanduser()
        if path.is_dir():
            found = sorted(
                p for p in path.rglob("*") if p.is_file() and contains_any_extensions(p, VIDEO_EXTENSIONS)
            )
            logger.debug(f"Found {len(found)} video file(s) in {path}")
            files.extend(found)
        elif path.is_file():
            files.append(path)
        else:
            logger.warning(f"Skipping '{raw}': no such file or directory.")
    return files
