"""
Configuration package for clipcrunch.

All static settings live here as module-level constants so that tuning the
engine never requires touching the code that uses them. ``common`` holds the
engine-wide values (logging, concurrency, progress smoothing, task states)
and the loader for the optional ``config.user.yaml``; ``video`` holds the
container, codec and filename settings.
"""
