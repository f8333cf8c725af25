"""
Observability Module — in-process metrics.
"""

from .metrics import Counter, MetricsRegistry, metrics

__all__ = [
    "metrics",
    "MetricsRegistry",
    "Counter",
]
