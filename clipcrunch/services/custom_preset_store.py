"""
YAML persistence for user-defined presets.

The preset catalog itself is purely in-memory. The CLI uses this store to
keep custom presets between runs: they are loaded into the catalog at start-up
and written back after a preset was added or removed.

File layout::

    presets:
      - id: my-720p
        name: My 720p
        video_codec: libx264
        resolution: 1280x720
        quality: {kind: crf, crf: 24}
"""
from pathlib import Path
from typing import List

import yaml
from loguru import logger

from ..domain.exceptions import PresetCatalogException, ValidationError
from ..domain.preset import Preset
from .preset_catalog import PresetCatalog


class CustomPresetStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[Preset]:
        """
        Reads all presets from the file.

        A missing file yields an empty list. Entries that cannot be parsed are
        skipped with an error log; the rest are still returned.
        """
        if not self.path.is_file():
            logger.debug(f"Custom preset file '{self.path}' not found.")
            return []

        try:
            with self.path.open("r", encoding="utf-8") as f:
                content = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Could not read custom presets from '{self.path}': {e}")
            return []

        entries = content.get("presets") if isinstance(content, dict) else None
        if not isinstance(entries, list):
            logger.warning(f"Custom preset file '{self.path}' has no 'presets' list.")
            return []

        presets = []
        for entry in entries:
            try:
                presets.append(Preset.from_dict(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.error(f"Skipping invalid custom preset entry {entry!r}: {e}")
        return presets

    def save(self, presets: List[Preset]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"presets": [preset.to_dict() for preset in presets]}
        with self.path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True, indent=2)
        logger.debug(f"Saved {len(presets)} custom preset(s) to '{self.path}'")

    def load_into(self, catalog: PresetCatalog) -> int:
        """Adds every stored preset to `catalog`. Returns how many were added."""
        added = 0
        for preset in self.load():
            try:
                catalog.add_custom(preset.id, preset)
                added += 1
            except (PresetCatalogException, ValidationError) as e:
                logger.warning(f"Custom preset '{preset.id}' not loaded: {e}")
        return added

    def save_from(self, catalog: PresetCatalog) -> None:
        self.save(catalog.custom_presets())
