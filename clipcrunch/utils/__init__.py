"""
Utilities package for clipcrunch.

Helpers that are not specific to any single part of the compression domain.

Modules:
    - ffmpeg_utils.py: Locates ffmpeg/ffprobe, verifies the installation,
      starts encoder processes and terminates them with a grace period.
    - format_utils.py: Formats durations, file sizes and percentages for
      display.
    - rwlock.py: A readers-writer lock used to guard the shared preset catalog.
"""
