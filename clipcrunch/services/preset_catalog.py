"""
The preset catalog: built-in encoding presets plus user-defined ones.

The catalog is the only state shared between concurrent batch runs. Reads
(listing and lookups during request validation) vastly outnumber writes
(a user adding or removing a custom preset), so access is guarded by a
readers-writer lock.

Built-in presets are immutable and always listed first, in the fixed order
of `BUILTIN_PRESETS`; custom presets follow in insertion order.
"""
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from loguru import logger

from ..domain.exceptions import (
    BuiltinPresetError,
    PresetAlreadyExists,
    PresetNotFound,
    ValidationError,
)
from ..domain.preset import Preset, QualityMode
from ..utils.rwlock import ReadWriteLock

BUILTIN_PRESETS = (
    Preset(
        id="web",
        name="Web",
        description="Optimized for web streaming with good quality and small file size",
        folder_name="Web",
        resolution="1280x720",
        video_codec="libx264",
        quality=QualityMode.constant(27),
        audio_bitrate="64k",
        fps=30,
        speed="medium",
    ),
    Preset(
        id="web-hero",
        name="Web Hero",
        description="Full HD hero video for landing pages",
        folder_name="Web Hero",
        tag="hero",
        resolution="1920x1080",
        video_codec="libx264",
        quality=QualityMode.constant(23),
        fps=30,
        speed="slow",
    ),
    Preset(
        id="web-mobile",
        name="Web Mobile",
        description="Small H.264 for phones on slow connections",
        folder_name="Web Mobile",
        tag="mob",
        resolution="854x480",
        video_codec="libx264",
        quality=QualityMode.constant(28),
        audio_bitrate="64k",
        fps=30,
        speed="fast",
    ),
    Preset(
        id="streaming-2pass",
        name="Streaming (2-pass)",
        description="Two-pass H.264 at a bitrate picked from a resolution ladder",
        folder_name="Streaming",
        tag="2p",
        resolution="1280x720",
        video_codec="libx264",
        quality=QualityMode.bitrate_ladder(
            [(360, "600k"), (480, "1000k"), (720, "2500k"), (1080, "4500k"), (2160, "12000k")]
        ),
        fps=30,
        speed="medium",
        is_two_pass=True,
    ),
    Preset(
        id="webm-modern",
        name="WebM Modern",
        description="Modern WebM format with VP9 for better compression",
        folder_name="WebM Modern",
        tag="webm",
        resolution="1280x720",
        container="webm",
        video_codec="libvpx-vp9",
        quality=QualityMode.constant(30),
        audio_codec="libopus",
        audio_bitrate="64k",
        fps=30,
        speed="good",
    ),
    Preset(
        id="hevc-efficient",
        name="HEVC Efficient",
        description="H.265/HEVC for maximum compression efficiency",
        folder_name="HEVC Efficient",
        tag="hevc",
        resolution="1280x720",
        video_codec="libx265",
        quality=QualityMode.constant(28),
        audio_bitrate="64k",
        fps=30,
        speed="medium",
    ),
    Preset(
        id="mac-hardware",
        name="Mac Hardware Accelerated",
        description="Uses Mac VideoToolbox for faster encoding",
        folder_name="Mac Hardware",
        tag="vt",
        resolution="1280x720",
        video_codec="h264_videotoolbox",
        quality=QualityMode.target("1000k"),
        audio_bitrate="64k",
        fps=30,
    ),
    Preset(
        id="mac-hevc",
        name="Mac HEVC Hardware",
        description="Hardware-accelerated HEVC encoding for maximum efficiency",
        folder_name="Mac HEVC",
        tag="vth",
        resolution="1280x720",
        video_codec="hevc_videotoolbox",
        quality=QualityMode.target("800k"),
        audio_bitrate="64k",
        fps=30,
    ),
    Preset(
        id="thumbnail-preview",
        name="Thumbnail",
        description="Small file size for thumbnails and previews",
        folder_name="Thumbnail Preview",
        tag="thumb",
        resolution="640x360",
        video_codec="libx264",
        quality=QualityMode.constant(32),
        audio_bitrate="48k",
        fps=24,
        speed="ultrafast",
        remove_audio_default=True,
    ),
    Preset(
        id="ultra-compressed",
        name="Ultra Compressed",
        description="Maximum compression for minimal file size",
        folder_name="Ultra Compressed",
        tag="tiny",
        resolution="480x270",
        video_codec="libx264",
        quality=QualityMode.constant(35),
        audio_bitrate="32k",
        fps=24,
        speed="ultrafast",
        remove_audio_default=True,
    ),
)


class PresetCatalog:
    """
    Lookup table of presets with create/remove for custom entries.

    A single catalog is meant to be shared by every batch run in the process.
    Custom presets live only as long as the catalog; persisting them is up to
    the caller (see `CustomPresetStore`).
    """

    def __init__(self, builtins: Optional[Iterable[Preset]] = None):
        self._lock = ReadWriteLock()
        self._builtins: Dict[str, Preset] = {}
        self._custom: Dict[str, Preset] = {}
        for preset in BUILTIN_PRESETS if builtins is None else builtins:
            if preset.id in self._builtins:
                raise ValueError(f"Duplicate built-in preset id '{preset.id}'")
            self._builtins[preset.id] = replace(preset, builtin=True)

    def list(self) -> List[Preset]:
        """All presets: built-ins in display order, then custom presets in insertion order."""
        with self._lock.read_locked():
            return [*self._builtins.values(), *self._custom.values()]

    def get(self, preset_id: str) -> Preset:
        """
        Raises:
            PresetNotFound: If no preset has this id.
        """
        with self._lock.read_locked():
            preset = self._builtins.get(preset_id) or self._custom.get(preset_id)
        if preset is None:
            raise PresetNotFound(preset_id)
        return preset

    def __contains__(self, preset_id: str) -> bool:
        with self._lock.read_locked():
            return preset_id in self._builtins or preset_id in self._custom

    def custom_presets(self) -> List[Preset]:
        with self._lock.read_locked():
            return list(self._custom.values())

    def add_custom(self, preset_id: str, preset: Preset) -> Preset:
        """
        Registers a user-defined preset under `preset_id`.

        Returns:
            The stored preset (a copy carrying `preset_id`).

        Raises:
            PresetAlreadyExists: If the id is taken by a built-in or custom preset.
            ValidationError: If the preset's parameters are invalid.
        """
        stored = preset.as_custom(preset_id)
        problems = stored.validate()
        if problems:
            raise ValidationError(problems)

        with self._lock.write_locked():
            if preset_id in self._builtins or preset_id in self._custom:
                raise PresetAlreadyExists(preset_id)
            self._custom[preset_id] = stored
        logger.info(f"Added custom preset '{preset_id}' ({stored.name})")
        return stored

    def remove_custom(self, preset_id: str) -> Preset:
        """
        Removes a user-defined preset.

        Raises:
            BuiltinPresetError: If `preset_id` names a built-in preset.
            PresetNotFound: If no custom preset has this id.
        """
        with self._lock.write_locked():
            if preset_id in self._builtins:
                raise BuiltinPresetError(preset_id)
            removed = self._custom.pop(preset_id, None)
        if removed is None:
            raise PresetNotFound(preset_id)
        logger.info(f"Removed custom preset '{preset_id}'")
        return removed
