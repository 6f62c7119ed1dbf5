"""Prometheus text exposition for the metric registry."""

from __future__ import annotations

from telemetry.registry import MetricRegistry

CONTENT_TYPE = "text/plain; version=0.0.4"


def _format_labels(labels: dict[str, str]) -> str:
    """Format labels as ``{k1="v1",k2="v2"}``, sorted for deterministic output."""
    if not labels:
        return ""
    parts = [f'{key}="{value}"' for key, value in sorted(labels.items())]
    return "{" + ",".join(parts) + "}"


def render_metrics(registry: MetricRegistry) -> str:
    """Collect all metrics and format them for Prometheus.

    Returns:
        Metrics in Prometheus text exposition format
    """
    lines: list[str] = []
    all_metrics = registry.collect_all()

    for kind in ("counters", "gauges"):
        metric_type = kind[:-1]
        for name, metric in sorted(all_metrics[kind].items()):
            lines.append(f"# HELP {name} {metric.help_text}")
            lines.append(f"# TYPE {name} {metric_type}")
            samples = metric.collect()
            if not samples:
                lines.append(f"{name} 0.0")
            for labels, value in samples:
                lines.append(f"{name}{_format_labels(labels)} {value}")

    for name, histogram in sorted(all_metrics["histograms"].items()):
        lines.append(f"# HELP {name} {histogram.help_text}")
        lines.append(f"# TYPE {name} histogram")
        samples = histogram.collect()
        if not samples:
            lines.append(f"{name}_count 0")
            lines.append(f"{name}_sum 0.0")
        for labels, bucket_counts, total, count in samples:
            for upper_bound, cumulative in zip(histogram.buckets, bucket_counts, strict=True):
                bucket_labels = {**labels, "le": str(upper_bound)}
                lines.append(f"{name}_bucket{_format_labels(bucket_labels)} {cumulative}")
            lines.append(f"{name}_bucket{_format_labels({**labels, 'le': '+Inf'})} {count}")
            lines.append(f"{name}_sum{_format_labels(labels)} {total}")
            lines.append(f"{name}_count{_format_labels(labels)} {count}")

    return "\n".join(lines) + "\n" if lines else ""
