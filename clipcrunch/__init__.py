"""
clipcrunch: batch video compression around an external ffmpeg encoder.

The package is laid out in layers:

- ``config``: static settings and the optional ``config.user.yaml`` overrides.
- ``domain``: presets, tasks, lifecycle events and the exception hierarchy.
- ``services``: the preset catalog, output path resolution, encoder strategies,
  progress normalization and report writing.
- ``pipeline``: the orchestration engine that expands a request into tasks and
  runs them under a concurrency limit.
- ``utils``: process helpers and formatting functions.

The most commonly used entry points are re-exported here.
"""

from .domain.preset import AdvancedOverrides, Preset, QualityMode
from .domain.task import BatchResult, CompressionRequest, TaskKey, make_task_key
from .pipeline.batch_pipeline import BatchCompressionPipeline
from .services.preset_catalog import PresetCatalog

__version__ = "0.3.0"

__all__ = [
    "AdvancedOverrides",
    "BatchCompressionPipeline",
    "BatchResult",
    "CompressionRequest",
    "Preset",
    "PresetCatalog",
    "QualityMode",
    "TaskKey",
    "make_task_key",
]
