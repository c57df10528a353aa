"""
This package contains the compression orchestration engine.

`BatchCompressionPipeline` expands a request into tasks, runs them under a
concurrency limit, wires cancellation and reports progress and outcomes as a
stream of events.
"""
