"""
Common configuration settings used throughout clipcrunch.

This module contains the engine-wide constants: logging format, concurrency
limits, progress smoothing tunables and task lifecycle states. It also loads
user-specific overrides from an external YAML file so that tool locations and
the worker count can be changed without editing the source.
"""
import os
from pathlib import Path

import yaml
from loguru import logger

# --- User-Defined Configuration ---
# Loaded once from 'config.user.yaml' at the project root, or from the file
# named by the CLIPCRUNCH_CONFIG environment variable.

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
USER_CONFIG_PATH = Path(os.environ.get("CLIPCRUNCH_CONFIG", PROJECT_ROOT / "config.user.yaml"))

# Directory containing the ffmpeg executable. None means "use the system PATH".
FFMPEG_DIR: Path | None = None

# Directory containing the ffprobe executable. Defaults to FFMPEG_DIR when unset.
FFPROBE_DIR: Path | None = None

# Directory for transient two-pass statistics. None means the system temp dir.
TEMP_WORK_DIR: Path | None = None

# --- Concurrency ---

# Number of encoder processes run side by side when nothing else is configured.
DEFAULT_MAX_WORKERS = 2

# Upper bound accepted for the worker count, whatever the source of the value.
MAX_WORKERS_LIMIT = 6

# A request expanding to more tasks than this is rejected during validation.
MAX_TASKS_PER_BATCH = 500

USER_MAX_WORKERS: int | None = None

if USER_CONFIG_PATH.is_file():
    try:
        with USER_CONFIG_PATH.open("r", encoding="utf-8") as f:
            user_config = yaml.safe_load(f) or {}
        paths_config = user_config.get("paths") or {}
        performance_config = user_config.get("performance") or {}

        if paths_config.get("ffmpeg_dir"):
            FFMPEG_DIR = Path(paths_config["ffmpeg_dir"])
        if paths_config.get("ffprobe_dir"):
            FFPROBE_DIR = Path(paths_config["ffprobe_dir"])
        if paths_config.get("temp_work_dir"):
            TEMP_WORK_DIR = Path(paths_config["temp_work_dir"])
        if performance_config.get("max_workers"):
            USER_MAX_WORKERS = int(performance_config["max_workers"])
    except Exception as e:
        logger.warning(f"Could not load or parse '{USER_CONFIG_PATH}': {e}")
else:
    logger.debug(f"User config '{USER_CONFIG_PATH}' not found. Using built-in defaults.")


# --- Logging Configuration ---

LOGGER_FORMAT = (
    "<green>{time:MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "{thread.name} - <level>{message}</level>"
)

# Default filename of the YAML batch report written by the CLI.
REPORT_FILE_NAME = "clipcrunch_report.yaml"


# --- Progress Reporting ---

# Minimum change (percentage points) before a new value is forwarded.
MIN_EMIT_DELTA = 0.5

# Highest percentage a running task may report; 100 is reserved for a
# confirmed successful exit.
RUNNING_PERCENT_CEILING = 99.9

# Seconds without an advancing sample before the displayed value starts to creep.
STALL_TIMEOUT_SECONDS = 5.0

# Creep speed in percentage points per second once a task is stalled.
STALL_CREEP_RATE = 0.05

# The creep never pushes the displayed value above this.
STALL_CREEP_CEILING = 99.5

# How often running tasks are checked for stalls.
HEARTBEAT_INTERVAL_SECONDS = 0.5


# --- Process Supervision ---

# Seconds between the polite termination signal and a forceful kill.
TERMINATE_GRACE_SECONDS = 5.0

# Number of trailing non-progress stderr lines kept for error details.
STDERR_TAIL_LINES = 15


# --- Task Status Constants ---

TASK_STATUS_PENDING = "pending"
TASK_STATUS_RUNNING = "running"
TASK_STATUS_COMPLETED = "completed"
TASK_STATUS_FAILED = "failed"
TASK_STATUS_CANCELLED = "cancelled"

TERMINAL_TASK_STATUSES = (
    TASK_STATUS_COMPLETED,
    TASK_STATUS_FAILED,
    TASK_STATUS_CANCELLED,
)


# --- Custom Presets ---

# YAML file the CLI keeps user-defined presets in between runs.
CUSTOM_PRESETS_PATH = Path.home() / ".clipcrunch" / "custom_presets.yaml"
