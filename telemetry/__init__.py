"""Telemetry module for in-process metrics and Prometheus exposition."""

from telemetry.prometheus import CONTENT_TYPE, render_metrics
from telemetry.registry import Counter, Gauge, Histogram, MetricRegistry

__all__ = [
    "CONTENT_TYPE",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricRegistry",
    "render_metrics",
]
