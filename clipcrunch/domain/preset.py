"""
Data models describing *how* a video is encoded.

A `Preset` bundles everything an encoder strategy needs to build its argument
vector: target resolution, container, codecs, a quality target and whether the
encode is done in two passes. `AdvancedOverrides` carries per-preset tweaks a
caller may apply on top of a preset for a single request.

Both models are plain dataclasses. Presets are frozen so that built-in entries
can be shared between threads and batch runs without copying.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

from ..config.video import CODEC_DEFAULT_CONTAINER, CRF_RANGE, DEFAULT_CONTAINER, FPS_RANGE

QUALITY_CRF = "crf"
QUALITY_BITRATE = "bitrate"
QUALITY_LADDER = "ladder"
QUALITY_KINDS = (QUALITY_CRF, QUALITY_BITRATE, QUALITY_LADDER)

SOURCE_RESOLUTION = "source"

_RESOLUTION_RE = re.compile(r"^(\d{2,5})x(\d{2,5})$")
_BITRATE_RE = re.compile(r"^\d+k$")


def parse_resolution(resolution: str) -> Optional[Tuple[int, int]]:
    """
    Parses a ``WIDTHxHEIGHT`` string.

    Returns:
        A ``(width, height)`` tuple, or None for ``"source"`` (keep the input size).

    Raises:
        ValueError: If the string is neither ``"source"`` nor ``WxH``.
    """
    if resolution == SOURCE_RESOLUTION:
        return None
    match = _RESOLUTION_RE.match(resolution or "")
    if not match:
        raise ValueError(f"Invalid resolution '{resolution}', expected WIDTHxHEIGHT or 'source'")
    return int(match.group(1)), int(match.group(2))


def is_valid_bitrate(value: str) -> bool:
    return bool(_BITRATE_RE.match(value or ""))


@dataclass(frozen=True)
class QualityMode:
    """
    The quality target of a preset.

    Exactly one of the three forms is used, selected by `kind`:

    - ``crf``: constant quality, `crf` holds the value.
    - ``bitrate``: a fixed target bitrate such as ``"2500k"``.
    - ``ladder``: a list of ``(max_height, bitrate)`` rungs sorted by height;
      the rung matching the output height is used. Ladders go with two-pass
      presets, where a target bitrate is needed for the analysis pass.
    """

    kind: str
    crf: Optional[int] = None
    bitrate: Optional[str] = None
    ladder: Tuple[Tuple[int, str], ...] = ()

    @classmethod
    def constant(cls, crf: int) -> QualityMode:
        return cls(kind=QUALITY_CRF, crf=crf)

    @classmethod
    def target(cls, bitrate: str) -> QualityMode:
        return cls(kind=QUALITY_BITRATE, bitrate=bitrate)

    @classmethod
    def bitrate_ladder(cls, rungs: List[Tuple[int, str]]) -> QualityMode:
        return cls(kind=QUALITY_LADDER, ladder=tuple(sorted((int(h), str(b)) for h, b in rungs)))

    def bitrate_for_height(self, height: Optional[int]) -> Optional[str]:
        """Returns the target bitrate for an output of the given height, if this mode has one."""
        if self.kind == QUALITY_BITRATE:
            return self.bitrate
        if self.kind != QUALITY_LADDER or not self.ladder:
            return None
        if height is None:
            return self.ladder[-1][1]
        for max_height, bitrate in self.ladder:
            if max_height >= height:
                return bitrate
        return self.ladder[-1][1]

    def validate(self) -> List[str]:
        problems = []
        if self.kind not in QUALITY_KINDS:
            problems.append(f"unknown quality mode '{self.kind}'")
        elif self.kind == QUALITY_CRF:
            if self.crf is None or not CRF_RANGE[0] <= self.crf <= CRF_RANGE[1]:
                problems.append(f"crf must be between {CRF_RANGE[0]} and {CRF_RANGE[1]}")
        elif self.kind == QUALITY_BITRATE:
            if not is_valid_bitrate(self.bitrate):
                problems.append(f"invalid bitrate '{self.bitrate}'")
        elif not self.ladder:
            problems.append("bitrate ladder is empty")
        else:
            problems.extend(f"invalid ladder bitrate '{b}'" for _, b in self.ladder if not is_valid_bitrate(b))
        return problems

    def to_dict(self) -> dict:
        data = {"kind": self.kind}
        if self.kind == QUALITY_CRF:
            data["crf"] = self.crf
        elif self.kind == QUALITY_BITRATE:
            data["bitrate"] = self.bitrate
        else:
            data["ladder"] = [[h, b] for h, b in self.ladder]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> QualityMode:
        kind = data.get("kind", QUALITY_CRF)
        if kind == QUALITY_LADDER:
            return cls.bitrate_ladder([tuple(rung) for rung in data.get("ladder", [])])
        crf = data.get("crf")
        return cls(
            kind=kind,
            crf=int(crf) if crf is not None else None,
            bitrate=data.get("bitrate"),
        )


@dataclass(frozen=True)
class Preset:
    """
    A named set of encoding parameters.

    Attributes:
        id: Unique identifier across built-in and custom presets.
        name: Display name.
        description: One-line description shown by ``--list-presets``.
        folder_name: Name of the output subfolder; falls back to `name`.
        tag: Short marker appended to output filenames (may be empty).
        resolution: ``"WIDTHxHEIGHT"`` or ``"source"``.
        container: Output file extension without the dot.
        video_codec: ffmpeg encoder name, e.g. ``libx264``.
        audio_codec: ffmpeg audio encoder name.
        audio_bitrate: Audio bitrate such as ``"128k"``.
        fps: Output frame rate, or None to keep the source rate.
        speed: Encoder speed preset (``-preset`` or ``-deadline``), if any.
        quality: The quality target.
        is_two_pass: Encode with an analysis pass followed by the real pass.
        remove_audio_default: Drop the audio track unless the caller asks to keep it.
        builtin: Set for presets shipped with the catalog.
    """

    id: str
    name: str
    video_codec: str
    quality: QualityMode
    description: str = ""
    folder_name: str = ""
    tag: str = ""
    resolution: str = SOURCE_RESOLUTION
    container: str = ""
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    fps: Optional[int] = None
    speed: Optional[str] = None
    is_two_pass: bool = False
    remove_audio_default: bool = False
    builtin: bool = field(default=False, compare=False)

    @property
    def extension(self) -> str:
        container = self.container or CODEC_DEFAULT_CONTAINER.get(self.video_codec, DEFAULT_CONTAINER)
        return container.lstrip(".")

    def target_size(self) -> Optional[Tuple[int, int]]:
        return parse_resolution(self.resolution)

    def as_custom(self, preset_id: str) -> Preset:
        """Returns a copy registered under `preset_id` and marked as user-defined."""
        return replace(self, id=preset_id, builtin=False)

    def validate(self) -> List[str]:
        problems = []
        if not self.id:
            problems.append("preset id must not be empty")
        if not self.video_codec:
            problems.append(f"preset '{self.id}' has no video codec")
        try:
            self.target_size()
        except ValueError as e:
            problems.append(str(e))
        if self.fps is not None and not FPS_RANGE[0] <= self.fps <= FPS_RANGE[1]:
            problems.append(f"fps must be between {FPS_RANGE[0]} and {FPS_RANGE[1]}")
        if not is_valid_bitrate(self.audio_bitrate):
            problems.append(f"invalid audio bitrate '{self.audio_bitrate}'")
        problems.extend(self.quality.validate())
        if self.is_two_pass and self.quality.kind == QUALITY_CRF:
            problems.append(f"two-pass preset '{self.id}' needs a bitrate or ladder quality mode")
        return problems

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "folder_name": self.folder_name,
            "tag": self.tag,
            "resolution": self.resolution,
            "container": self.container,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
            "audio_bitrate": self.audio_bitrate,
            "fps": self.fps,
            "speed": self.speed,
            "quality": self.quality.to_dict(),
            "is_two_pass": self.is_two_pass,
            "remove_audio_default": self.remove_audio_default,
        }

    @classmethod
    def from_dict(cls, data: dict, preset_id: Optional[str] = None) -> Preset:
        fps = data.get("fps")
        return cls(
            id=preset_id or data["id"],
            name=data.get("name") or preset_id or data["id"],
            description=data.get("description", ""),
            folder_name=data.get("folder_name", ""),
            tag=data.get("tag", ""),
            resolution=str(data.get("resolution", SOURCE_RESOLUTION)),
            container=data.get("container", ""),
            video_codec=data["video_codec"],
            audio_codec=data.get("audio_codec", "aac"),
            audio_bitrate=data.get("audio_bitrate", "128k"),
            fps=int(fps) if fps is not None else None,
            speed=data.get("speed"),
            quality=QualityMode.from_dict(data.get("quality") or {"kind": QUALITY_CRF, "crf": 23}),
            is_two_pass=bool(data.get("is_two_pass", False)),
            remove_audio_default=bool(data.get("remove_audio_default", False)),
        )


@dataclass
class AdvancedOverrides:
    """
    Per-preset adjustments applied on top of a preset for one request.

    Every field is optional; None means "use the preset's value". Setting any
    encoding field switches the task from the basic strategy to the explicit
    single-pass (or two-pass) strategy. `keep_audio` only affects the audio
    decision and output naming.
    """

    crf: Optional[int] = None
    video_bitrate: Optional[str] = None
    audio_bitrate: Optional[str] = None
    fps: Optional[int] = None
    resolution: Optional[str] = None
    preserve_aspect_ratio: bool = False
    two_pass: Optional[bool] = None
    fast_start: bool = False
    optimize_for_web: bool = False
    keep_audio: Optional[bool] = None

    def has_encoding_overrides(self) -> bool:
        return any(
            [
                self.crf is not None,
                self.video_bitrate is not None,
                self.audio_bitrate is not None,
                self.fps is not None,
                self.resolution is not None,
                self.preserve_aspect_ratio,
                self.two_pass is not None,
                self.fast_start,
                self.optimize_for_web,
            ]
        )

    def validate(self, preset: Preset) -> List[str]:
        problems = []
        prefix = f"overrides for '{preset.id}'"
        if self.crf is not None and not CRF_RANGE[0] <= self.crf <= CRF_RANGE[1]:
            problems.append(f"{prefix}: crf must be between {CRF_RANGE[0]} and {CRF_RANGE[1]}")
        if self.fps is not None and not FPS_RANGE[0] <= self.fps <= FPS_RANGE[1]:
            problems.append(f"{prefix}: fps must be between {FPS_RANGE[0]} and {FPS_RANGE[1]}")
        for label, value in (("video bitrate", self.video_bitrate), ("audio bitrate", self.audio_bitrate)):
            if value is not None and not is_valid_bitrate(value):
                problems.append(f"{prefix}: invalid {label} '{value}' (expected e.g. '2500k')")
        if self.resolution is not None:
            try:
                parse_resolution(self.resolution)
            except ValueError as e:
                problems.append(f"{prefix}: {e}")
        two_pass = self.two_pass if self.two_pass is not None else preset.is_two_pass
        if two_pass and self.video_bitrate is None and preset.quality.kind == QUALITY_CRF:
            problems.append(f"{prefix}: two-pass encoding needs a video bitrate")
        return problems

    @classmethod
    def from_dict(cls, data: dict) -> AdvancedOverrides:
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)
