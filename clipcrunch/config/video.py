"""
Configuration settings related to video files and encoder arguments.
"""

# --- Input Identification ---
VIDEO_EXTENSIONS = (
    ".mp4", ".mov", ".mkv", ".avi", ".webm", ".m4v", ".wmv", ".flv",
    ".mpg", ".mpeg", ".ts", ".m2ts", ".mts", ".3gp",
)

# --- Output Naming ---
# Longest stem kept from a source filename before suffixes are appended.
MAX_FILENAME_STEM_LENGTH = 120

# Fallback names when sanitizing leaves nothing usable.
DEFAULT_OUTPUT_STEM = "video"
DEFAULT_PRESET_FOLDER = "preset"

# Marker appended to output names when the audio track is dropped.
MUTED_TAG = "muted"

# Characters that are invalid in filenames on at least one supported platform.
INVALID_FILENAME_CHARS = '<>:"/\\|?*'

# Reserved device names on Windows; a stem equal to one of these gets a prefix.
WINDOWS_RESERVED_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)

# --- Codec Behaviour ---
# Codecs that understand the x264/x265 style `-preset <speed>` option.
SPEED_PRESET_CODECS = ("libx264", "libx265")

# Codecs that take `-deadline` instead of `-preset`.
DEADLINE_CODECS = ("libvpx-vp9", "libvpx")

# Codecs for which `-profile:v baseline -level 3.0` is meaningful.
WEB_PROFILE_CODECS = ("libx264", "h264_videotoolbox")

# Containers used when a preset names a codec but no container.
CODEC_DEFAULT_CONTAINER = {
    "libvpx-vp9": "webm",
    "libvpx": "webm",
}
DEFAULT_CONTAINER = "mp4"

# Valid ranges for user overrides.
CRF_RANGE = (0, 51)
FPS_RANGE = (1, 120)
