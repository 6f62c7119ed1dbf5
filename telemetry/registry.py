"""Thread-safe registry of Prometheus-compatible metrics.

Metrics are updated from HTTP pool threads, the signal dispatcher and the
timer thread, so every metric guards its samples with a ``threading.Lock``.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any

DEFAULT_BUCKETS = [0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0]


class _Metric:
    """Shared label handling for all metric kinds."""

    def __init__(self, name: str, help_text: str, label_names: list[str] | None = None) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = label_names or []
        self._lock = threading.Lock()

    def _label_key(self, labels: dict[str, str] | None) -> tuple[str, ...]:
        """Validate labels and return their values in ``label_names`` order.

        Raises:
            ValueError: If label keys don't match label_names
        """
        if not self.label_names:
            if labels:
                raise ValueError(f"Metric {self.name} has no labels, but labels were provided")
            return ()

        if not labels:
            raise ValueError(
                f"Metric {self.name} requires labels {self.label_names}, but none provided"
            )

        if set(labels) != set(self.label_names):
            raise ValueError(
                f"Label keys {set(labels)} don't match expected {set(self.label_names)} "
                f"for metric {self.name}"
            )

        return tuple(labels[name] for name in self.label_names)

    def _labels_dict(self, key: tuple[str, ...]) -> dict[str, str]:
        return dict(zip(self.label_names, key, strict=True)) if self.label_names else {}


class Counter(_Metric):
    """Monotonically increasing counter."""

    def __init__(self, name: str, help_text: str, label_names: list[str] | None = None) -> None:
        super().__init__(name, help_text, label_names)
        self._values: dict[tuple[str, ...], float] = defaultdict(float)

    def inc(self, amount: float = 1.0, labels: dict[str, str] | None = None) -> None:
        """Increment counter.

        Raises:
            ValueError: If amount < 0 or labels don't match label_names
        """
        if amount < 0:
            raise ValueError(f"Counter can only increase, got negative amount: {amount}")
        key = self._label_key(labels)
        with self._lock:
            self._values[key] += amount

    def get(self, labels: dict[str, str] | None = None) -> float:
        key = self._label_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> list[tuple[dict[str, str], float]]:
        with self._lock:
            items = list(self._values.items())
        return [(self._labels_dict(key), value) for key, value in items]


class Gauge(_Metric):
    """Value that can go up and down."""

    def __init__(self, name: str, help_text: str, label_names: list[str] | None = None) -> None:
        super().__init__(name, help_text, label_names)
        self._values: dict[tuple[str, ...], float] = defaultdict(float)

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, amount: float = 1.0, labels: dict[str, str] | None = None) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] += amount

    def dec(self, amount: float = 1.0, labels: dict[str, str] | None = None) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] -= amount

    def get(self, labels: dict[str, str] | None = None) -> float:
        key = self._label_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> list[tuple[dict[str, str], float]]:
        with self._lock:
            items = list(self._values.items())
        return [(self._labels_dict(key), value) for key, value in items]


class Histogram(_Metric):
    """Observations sampled into cumulative buckets."""

    def __init__(
        self,
        name: str,
        help_text: str,
        buckets: list[float],
        label_names: list[str] | None = None,
    ) -> None:
        """Initialize histogram.

        Raises:
            ValueError: If buckets are not sorted or empty
        """
        super().__init__(name, help_text, label_names)
        if not buckets:
            raise ValueError("buckets must not be empty")
        if buckets != sorted(buckets):
            raise ValueError(f"buckets must be sorted, got {buckets}")
        self.buckets = list(buckets)
        # label values -> (bucket_counts, sum, count)
        self._data: dict[tuple[str, ...], tuple[list[int], float, int]] = {}

    def observe(self, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._label_key(labels)
        with self._lock:
            bucket_counts, total, count = self._data.get(key, ([0] * len(self.buckets), 0.0, 0))
            updated = [
                n + 1 if value <= bound else n
                for n, bound in zip(bucket_counts, self.buckets, strict=True)
            ]
            self._data[key] = (updated, total + value, count + 1)

    def get(self, labels: dict[str, str] | None = None) -> dict[str, Any]:
        key = self._label_key(labels)
        with self._lock:
            bucket_counts, total, count = self._data.get(key, ([0] * len(self.buckets), 0.0, 0))
        return {"bucket_counts": list(bucket_counts), "sum": total, "count": count}

    def collect(self) -> list[tuple[dict[str, str], list[int], float, int]]:
        with self._lock:
            items = list(self._data.items())
        return [
            (self._labels_dict(key), list(bucket_counts), total, count)
            for key, (bucket_counts, total, count) in items
        ]


class MetricRegistry:
    """Registry for storing and managing metrics.

    ``counter``/``gauge``/``histogram`` return the already registered metric
    when called again with the same name and kind, so independent components
    can share one registry without coordinating registration order.
    """

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str, label_names: list[str] | None = None) -> Counter:
        return self._get_or_create(Counter, name, lambda: Counter(name, help_text, label_names))

    def gauge(self, name: str, help_text: str, label_names: list[str] | None = None) -> Gauge:
        return self._get_or_create(Gauge, name, lambda: Gauge(name, help_text, label_names))

    def histogram(
        self,
        name: str,
        help_text: str,
        buckets: list[float] | None = None,
        label_names: list[str] | None = None,
    ) -> Histogram:
        return self._get_or_create(
            Histogram,
            name,
            lambda: Histogram(name, help_text, buckets or DEFAULT_BUCKETS, label_names),
        )

    def _get_or_create(self, kind: type[Any], name: str, factory: Any) -> Any:
        """Return the metric called ``name``, creating it on first use.

        Raises:
            ValueError: If ``name`` is registered as a different metric kind
        """
        with self._lock:
            existing = self._metrics.get(name)
            if existing is None:
                metric = factory()
                self._metrics[name] = metric
                return metric
            if not isinstance(existing, kind):
                raise ValueError(f"Metric {name} already registered as different type")
            return existing

    def get(self, name: str) -> _Metric | None:
        return self._metrics.get(name)

    def collect_all(self) -> dict[str, Any]:
        """Collect all metrics grouped by kind."""
        with self._lock:
            metrics = dict(self._metrics)
        return {
            "counters": {n: m for n, m in metrics.items() if isinstance(m, Counter)},
            "gauges": {n: m for n, m in metrics.items() if isinstance(m, Gauge)},
            "histograms": {n: m for n, m in metrics.items() if isinstance(m, Histogram)},
        }
