"""
Human-readable formatting for the CLI log lines and the batch report:
elapsed times, output sizes and percentages, plus the extension check used
when scanning input folders.
"""

from datetime import timedelta
from pathlib import Path
from typing import Iterable

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_timedelta(td_object: timedelta) -> str:
    """
    Renders an elapsed time as ``HH:MM:SS`` (7261 seconds -> ``"02:01:01"``).

    Fractions of a second are dropped. Anything that is not a timedelta
    renders as ``"00:00:00"``.
    """
    if not isinstance(td_object, timedelta):
        return "00:00:00"
    hours, rest = divmod(int(td_object.total_seconds()), 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02}:{minutes:02}:{seconds:02}"


def formatted_size(size_bytes: int) -> str:
    """
    Renders a byte count with a binary unit: 1536 -> ``"1.50 KB"``,
    2097152 -> ``"2 MB"``. Missing or non-positive sizes render as ``"0 B"``.
    """
    if not size_bytes or size_bytes <= 0:
        return "0 B"
    value = float(size_bytes)
    for unit in _SIZE_UNITS:
        if value < 1024 or unit == _SIZE_UNITS[-1]:
            break
        value /= 1024
    if unit == "B":
        return f"{size_bytes} B"
    return f"{value:.2f} {unit}".replace(".00", "")


def format_percent(percent: float) -> str:
    return f"{percent:5.1f}%"


def contains_any_extensions(file_path_obj: Path, extensions_to_check: Iterable[str]) -> bool:
    """True if the file's suffix is one of `extensions_to_check` (dot optional, case-insensitive)."""
    wanted = {ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions_to_check}
    return bool(wanted) and file_path_obj.suffix.lower() in wanted
