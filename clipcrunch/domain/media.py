import os
import re
from pathlib import Path
from typing import Optional

import ffmpeg
from loguru import logger

from .exceptions import SourceUnavailable
from ..utils.ffmpeg_utils import resolve_ffprobe_path


def parse_duration(duration_str: str) -> float:
    """
    Parses a duration string into total seconds.

    Two formats are accepted:
    1. A plain number of seconds as reported by ffprobe (e.g., "3600.5").
    2. A timecode in the form 'HH:MM:SS.sss' as printed in ffmpeg's
       `Duration:` header and `time=` progress fields. Hours are optional.

    Returns:
        The total duration in seconds. Returns 0.0 if parsing fails.
    """
    try:
        return float(duration_str)
    except (TypeError, ValueError):
        match = re.fullmatch(r"(?:(\d{1,3}):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)", (duration_str or "").strip())
        if match:
            hours_str, minutes_str, seconds_str = match.groups()
            hours = int(hours_str) if hours_str else 0
            return float(hours * 3600 + int(minutes_str) * 60 + float(seconds_str))
        logger.warning(f"Could not parse duration string: {duration_str}")
    return 0.0


def ensure_source_readable(path: Path) -> None:
    """
    Checks that a source file exists and can be opened for reading.

    Raises:
        SourceUnavailable: If the file is missing or unreadable.
    """
    if not path.is_file():
        raise SourceUnavailable(f"Source file not found: {path}")
    if not os.access(path, os.R_OK):
        raise SourceUnavailable(f"Source file is not readable: {path}")


def probe_duration(path: Path, ffprobe_cmd: Optional[str] = None) -> Optional[float]:
    """
    Returns the duration of a media file in seconds using ffprobe.

    The container duration is used when present, otherwise the longest stream
    duration. Probe failures are logged and reported as None; encoder
    strategies then fall back to the `Duration:` line the encoder prints itself.
    """
    try:
        probe = ffmpeg.probe(str(path), cmd=ffprobe_cmd or resolve_ffprobe_path())
    except ffmpeg.Error as e:
        stderr = e.stderr.decode("utf-8", errors="replace") if isinstance(e.stderr, bytes) else e.stderr
        logger.warning(f"ffprobe failed for {path.name}: {stderr}")
        return None
    except OSError as e:
        logger.warning(f"ffprobe could not be started for {path.name}: {e}")
        return None

    format_duration = probe.get("format", {}).get("duration")
    duration = parse_duration(format_duration) if format_duration else 0.0
    if duration <= 0:
        stream_durations = [
            parse_duration(stream["duration"])
            for stream in probe.get("streams", [])
            if stream.get("duration")
        ]
        duration = max(stream_durations, default=0.0)

    if duration <= 0:
        logger.warning(f"No duration found for {path.name}")
        return None

    logger.debug(f"Probed duration of {path.name}: {duration:.2f}s")
    return duration
