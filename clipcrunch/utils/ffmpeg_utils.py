"""
This module provides utility functions for locating and supervising the
external encoder (ffmpeg) and its companion prober (ffprobe).

It covers three concerns:
- Locating the executables, preferring the directories configured in
  `config.user.yaml` and falling back to the system PATH.
- Starting encoder processes with their stderr stream piped for progress
  parsing (`EncoderRunner`).
- Stopping processes politely, escalating to a kill after a grace period.
"""

import os
import shlex
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from loguru import logger

from ..config.common import FFMPEG_DIR, FFPROBE_DIR


def format_cmd_for_display(cmd_list: Sequence[str]) -> str:
    """Joins an argument vector into a copy-pasteable command line for logs."""
    try:
        if os.name == "nt":
            return subprocess.list2cmdline(list(cmd_list))
        return shlex.join(list(cmd_list))
    except Exception as e:
        logger.warning(f"Could not format command list for display: {e}. Using simple join.")
        return " ".join(str(part) for part in cmd_list)


def _resolve_tool_path(tool_name: str, configured_dir: Optional[Path]) -> str:
    """
    Determines the executable path for an external tool.

    The directory from the user config is preferred. If it is not set, or the
    tool is missing there, the bare tool name is returned so that the system
    PATH is used.
    """
    exe_name = f"{tool_name}.exe" if sys.platform == "win32" else tool_name

    if configured_dir and configured_dir.is_dir():
        configured_path = configured_dir / exe_name
        if configured_path.is_file():
            logger.debug(f"Using {tool_name} from configured path: '{configured_path}'")
            return str(configured_path)
        logger.warning(
            f"'{configured_dir}' is configured for {tool_name}, but '{exe_name}' was not found there. "
            f"Falling back to system PATH."
        )

    return tool_name


def resolve_ffmpeg_path() -> str:
    return _resolve_tool_path("ffmpeg", FFMPEG_DIR)


def resolve_ffprobe_path() -> str:
    return _resolve_tool_path("ffprobe", FFPROBE_DIR or FFMPEG_DIR)


def verify_ffmpeg(ffmpeg_cmd: Optional[str] = None) -> bool:
    """
    Verifies that FFmpeg is installed, accessible, and can be executed.

    Runs `ffmpeg -version` and logs the first line of the output on success,
    or a detailed error message if FFmpeg cannot be found or fails.

    Returns:
        True if the version check succeeded.
    """
    ffmpeg_cmd = ffmpeg_cmd or resolve_ffmpeg_path()

    try:
        result = subprocess.run(
            [ffmpeg_cmd, "-version"],
            check=True,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        version_output_lines = result.stdout.splitlines()
        first_line = version_output_lines[0] if version_output_lines else "(no output)"
        logger.info(f"FFmpeg version check successful: {first_line}")
        return True
    except subprocess.CalledProcessError as e:
        logger.error(f"FFmpeg version command failed (return code {e.returncode}):\n{e.stderr}")
    except FileNotFoundError:
        logger.error(
            "FFmpeg command not found. Please ensure FFmpeg is installed and accessible.\n"
            "You can either add it to your system's PATH or specify its location in the 'config.user.yaml' file."
        )
    except OSError as e:
        logger.error(f"An unexpected error occurred while checking FFmpeg version: {e}")
    return False


class EncoderRunner:
    """
    Starts encoder processes.

    `ffmpeg_command` is the command prefix placed in front of every argument
    list built by an encoder strategy. It is normally just the ffmpeg
    executable, but may hold several items (for example an interpreter plus a
    script standing in for ffmpeg).
    """

    def __init__(self, ffmpeg_command: Optional[Sequence[str]] = None):
        if ffmpeg_command is None:
            ffmpeg_command = [resolve_ffmpeg_path()]
        elif isinstance(ffmpeg_command, (str, os.PathLike)):
            ffmpeg_command = [os.fspath(ffmpeg_command)]
        self.ffmpeg_command: List[str] = [os.fspath(part) for part in ffmpeg_command]

    def command_for(self, args: Sequence[str]) -> List[str]:
        return self.ffmpeg_command + [str(arg) for arg in args]

    def spawn(self, args: Sequence[str]) -> subprocess.Popen:
        """
        Starts the encoder with `args`.

        stderr is piped in text mode so that carriage-return separated progress
        updates arrive as individual lines. stdin is closed so that the encoder
        never waits for interactive input. On POSIX the encoder gets its own
        session, so a terminal Ctrl+C reaches only the caller, which stops
        encoders through cancellation.

        Raises:
            OSError: If the executable cannot be started.
        """
        cmd_list = self.command_for(args)
        logger.debug(f"Executing: {format_cmd_for_display(cmd_list)}")
        return subprocess.Popen(
            cmd_list,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            universal_newlines=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            start_new_session=os.name == "posix",
        )


def terminate_process(process: subprocess.Popen, grace_period: float) -> None:
    """
    Stops a running process, escalating to a kill if it ignores termination.

    The polite signal is sent first; if the process has not exited after
    `grace_period` seconds it is killed.
    """
    if process.poll() is not None:
        return
    try:
        process.terminate()
        try:
            process.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {process.pid} did not exit within {grace_period}s, killing it.")
            process.kill()
            process.wait()
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.error(f"Error terminating process {process.pid}: {e}")
