"""
Services package for clipcrunch.

A service performs one specific task for the orchestration engine:

- **Preset Catalog (`PresetCatalog`):** built-in and custom presets, guarded
  for concurrent access. `CustomPresetStore` persists custom presets as YAML.
- **Output Paths (`OutputPathResolver`):** derives the output folder and
  filename for a task and de-duplicates collisions within a batch run.
- **Encoder Strategies (`BasicStrategy`, `SinglePassStrategy`,
  `TwoPassStrategy`):** build ffmpeg argument lists, run the encoder and map
  its progress output to percentages.
- **Progress Normalizer (`ProgressNormalizer`):** turns raw percentages into a
  smooth, non-decreasing display value.
- **Logging Service (`BatchReport`):** writes YAML reports of finished batches.
"""
