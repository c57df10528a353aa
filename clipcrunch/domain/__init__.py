"""
This package contains the core domain models of clipcrunch.

The domain layer describes the concepts of batch compression: presets and
their quality targets, compression requests, tasks with their lifecycle,
the events a batch run emits and the exception hierarchy. It does not build
encoder commands or schedule work; that is left to the service and pipeline
layers.
"""
