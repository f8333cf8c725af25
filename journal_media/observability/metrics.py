"""
Metrics — In-process counters for the media pipeline.

## Usage

    from journal_media.observability.metrics import metrics

    metrics.increment("uploads.succeeded")
    metrics.increment("sign.urls", 3)

    metrics.snapshot()   # {"uploads.succeeded": 1.0, "sign.urls": 3.0}

## Counters

- uploads.succeeded / uploads.failed   per file
- batches.aborted                      normalization failures
- sign.requests / sign.failures        batch sign calls
- sign.urls                            entries merged from sign responses
"""

from __future__ import annotations

import json
from threading import Lock
from typing import Dict


class Counter:
    """A monotonically increasing counter."""

    def __init__(self, name: str):
        self.name = name
        self._value = 0.0
        self._lock = Lock()

    def inc(self, value: float = 1) -> None:
        with self._lock:
            self._value += value

    def get(self) -> float:
        return self._value


class MetricsRegistry:
    """Named counters, created on first use."""

    def __init__(self, prefix: str = "journal_media"):
        self.prefix = prefix
        self._counters: Dict[str, Counter] = {}
        self._lock = Lock()

    def counter(self, name: str) -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name)
            return self._counters[name]

    def increment(self, name: str, value: float = 1) -> None:
        self.counter(name).inc(value)

    def get(self, name: str) -> float:
        counter = self._counters.get(name)
        return counter.get() if counter else 0

    def snapshot(self) -> Dict[str, float]:
        return {name: c.get() for name, c in sorted(self._counters.items())}

    def export_json(self) -> str:
        return json.dumps({"prefix": self.prefix, "counters": self.snapshot()}, indent=2)

    def export_prometheus(self) -> str:
        """Prometheus text exposition format."""
        lines = []
        for name, value in self.snapshot().items():
            metric = f"{self.prefix}_{name}".replace(".", "_")
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {value}")
        return "\n".join(lines) + ("\n" if lines else "")

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


metrics = MetricsRegistry()
