"""
Core Infrastructure for speechflow.

This package provides foundational components:
    - config.py: Defaults, YAML settings and validated configuration
    - logging/: Structured logging with numeric levels
    - metrics.py: Prometheus counters and gauges
"""
