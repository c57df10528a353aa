"""
Defines custom exception types for clipcrunch.

These exceptions allow callers to tell apart the three scopes in which things
can go wrong:

- Batch scope: a `ValidationError` rejects a whole request before any encoder
  process is started.
- Catalog scope: `PresetCatalogException` subclasses report lookups of unknown
  presets and illegal catalog mutations.
- Task scope: `TaskError` subclasses terminate a single task. They are recorded
  in the batch result and surface as `TaskFailed` events; sibling tasks keep
  running.

All custom exceptions inherit from the base `ClipCrunchException`.
"""
from typing import List, Optional, Sequence


class ClipCrunchException(Exception):
    """Base class for all custom exceptions in clipcrunch."""

    pass


# --- Request Validation ---
class ValidationError(ClipCrunchException):
    """
    Raised when a compression request is rejected as a whole.

    Validation collects every problem it finds instead of stopping at the
    first one, so the message lists all of them. No task is scheduled when
    this is raised.
    """

    def __init__(self, problems: Sequence[str]):
        self.problems: List[str] = list(problems)
        super().__init__("Invalid compression request: " + "; ".join(self.problems))


# --- Preset Catalog ---
class PresetCatalogException(ClipCrunchException):
    """Base class for errors raised by the preset catalog."""

    pass


class PresetNotFound(PresetCatalogException):
    """Raised when a preset id does not resolve in the catalog."""

    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(f"Preset '{preset_id}' not found")


class PresetAlreadyExists(PresetCatalogException):
    """Raised when adding a custom preset whose id is already taken."""

    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(f"Preset '{preset_id}' already exists")


class BuiltinPresetError(PresetCatalogException):
    """Raised when a caller attempts to remove or replace a built-in preset."""

    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(f"Preset '{preset_id}' is built-in and cannot be modified")


# --- Task Execution ---
class TaskError(ClipCrunchException):
    """
    Base class for errors that terminate a single task.

    Every task error carries a short `error_kind` identifier, used in events
    and reports, and a human-readable `detail` string that is enough to
    diagnose the problem without reading the full encoder log.
    """

    error_kind = "task_error"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class SpawnFailed(TaskError):
    """Raised when the encoder process cannot be started at all."""

    error_kind = "spawn_failed"


class EncodeFailed(TaskError):
    """
    Raised when the encoder process exits with a non-zero code.

    `exit_code` is None when the failure did not come from the process itself
    (for example an unexpected exception while supervising it).
    """

    error_kind = "encode_failed"

    def __init__(self, exit_code: Optional[int], detail: str, stderr_tail: Sequence[str] = ()):
        self.exit_code = exit_code
        self.stderr_tail: List[str] = list(stderr_tail)
        super().__init__(detail)


class SourceUnavailable(TaskError):
    """Raised when the source file is missing or becomes unreadable."""

    error_kind = "source_unavailable"


class OutputWriteFailed(TaskError):
    """
    Raised when the output cannot be written.

    Covers a full disk, missing permissions on the output folder, and an
    encoder that exits successfully without producing a non-empty file.
    """

    error_kind = "output_write_failed"


class TaskCancelledError(ClipCrunchException):
    """Raised inside a worker to unwind a task after cancellation was requested."""

    pass
