"""
Output path resolution.

Every output lands in ``<output_root>/<preset folder>/<stem><suffix>.<ext>``.
The folder and filename parts are derived by pure functions so they can be
tested without touching the filesystem; `OutputPathResolver` adds the
filesystem side: creating the folder and finding a free name.

A resolver instance belongs to a single batch run. Besides checking the disk,
it remembers every path it handed out, because several tasks of one batch may
target the same folder before any of them has written a file.

The check-then-use against the disk is not atomic: a file created by another
program between resolution and the encoder opening it will be overwritten.
"""
import os
import re
import threading
from pathlib import Path
from typing import Set, Union

from loguru import logger

from ..config.video import (
    DEFAULT_OUTPUT_STEM,
    DEFAULT_PRESET_FOLDER,
    INVALID_FILENAME_CHARS,
    MAX_FILENAME_STEM_LENGTH,
    MUTED_TAG,
    WINDOWS_RESERVED_NAMES,
)
from ..domain.preset import Preset

_INVALID_CHARS_RE = re.compile("[" + re.escape(INVALID_FILENAME_CHARS) + r"\x00-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")


def _clean_name(name: str) -> str:
    cleaned = _INVALID_CHARS_RE.sub("", name or "")
    cleaned = _WHITESPACE_RE.sub(" ", cleaned)
    # Trailing dots and spaces are silently dropped by Windows.
    return cleaned.strip().rstrip(". ")


def sanitize_folder_name(name: str) -> str:
    """
    Turns a preset display name into a folder name that is valid everywhere.

    >>> sanitize_folder_name("Web: 720p / Mobile")
    'Web 720p Mobile'
    """
    cleaned = _clean_name(name)
    if not cleaned or cleaned in (".", ".."):
        return DEFAULT_PRESET_FOLDER
    if cleaned.upper() in WINDOWS_RESERVED_NAMES:
        cleaned = f"_{cleaned}"
    return cleaned


def sanitize_filename_stem(stem: str, max_length: int = MAX_FILENAME_STEM_LENGTH) -> str:
    """
    Strips characters that are invalid in filenames and bounds the length.

    Truncation happens before the suffix and disambiguator are appended, so
    the final filename stays readable.
    """
    cleaned = _clean_name(stem)
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length].rstrip(". ")
    if not cleaned:
        return DEFAULT_OUTPUT_STEM
    if cleaned.upper() in WINDOWS_RESERVED_NAMES:
        cleaned = f"_{cleaned}"
    return cleaned


def output_suffix(preset: Preset, keep_audio: bool) -> str:
    """
    The marker appended to the stem: the preset tag, plus ``muted`` when the
    audio track is dropped. Empty when there is nothing to mark.
    """
    parts = []
    if preset.tag:
        parts.append(sanitize_filename_stem(preset.tag, max_length=16))
    if not keep_audio:
        parts.append(MUTED_TAG)
    return "_" + "_".join(parts) if parts else ""


def build_output_filename(stem: str, preset: Preset, keep_audio: bool, counter: int = 0) -> str:
    disambiguator = f" ({counter})" if counter else ""
    return f"{stem}{output_suffix(preset, keep_audio)}{disambiguator}.{preset.extension}"


class OutputPathResolver:
    """
    Allocates unique output paths under `output_root` for one batch run.
    """

    def __init__(self, output_root: Union[str, os.PathLike]):
        self.output_root = Path(output_root).expanduser().resolve()
        self._allocated: Set[str] = set()
        self._lock = threading.Lock()

    def preset_dir(self, preset: Preset) -> Path:
        return self.output_root / sanitize_folder_name(preset.folder_name or preset.name)

    def resolve(self, source: Union[str, os.PathLike], preset: Preset, keep_audio: bool) -> Path:
        """
        Returns a fresh absolute output path for `source` encoded with `preset`.

        The preset folder is created if needed. If the natural filename is
        taken on disk or was already handed out by this resolver, `` (1)``,
        `` (2)``, ... is appended until a free name is found.
        """
        folder = self.preset_dir(preset)
        folder.mkdir(parents=True, exist_ok=True)
        stem = sanitize_filename_stem(Path(source).stem)

        with self._lock:
            counter = 0
            while True:
                candidate = folder / build_output_filename(stem, preset, keep_audio, counter)
                key = os.path.normcase(str(candidate))
                if key not in self._allocated and not candidate.exists():
                    break
                counter += 1
            self._allocated.add(key)

        if counter:
            logger.debug(f"Output name collision for '{stem}', using '{candidate.name}'")
        return candidate
