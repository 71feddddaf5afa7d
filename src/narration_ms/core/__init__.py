"""
Core Infrastructure for narration-ms.

This package provides foundational components:
    - config.py: Configuration loading, validation and audio clamping
    - logging/: Structured logging with numeric levels
    - metrics.py: Request counters, running mean latency, Prometheus export
"""
