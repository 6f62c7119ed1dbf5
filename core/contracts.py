"""Profiling snapshot contract shared by profilers and exporters."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


@dataclass(frozen=True)
class Snapshot:
    """Aggregated samples for the half-open window ``[start_ns, end_ns)``.

    The session controller never looks inside a snapshot; it only moves it from
    the profiler to the export pipeline.

    Attributes:
        start_ns: Window start (nanoseconds since epoch, inclusive)
        end_ns: Window end (nanoseconds since epoch, exclusive)
        stacks: Folded stack (``outer;inner;leaf``) to sample count
        sample_count: Total number of samples aggregated into ``stacks``
        application_name: Name the samples are reported under
        labels: Static labels attached to the upload

    Raises:
        ValueError: If timestamps are negative or inverted, or counts are negative
    """

    start_ns: int
    end_ns: int
    stacks: Mapping[str, int] = field(default_factory=dict)
    sample_count: int = 0
    application_name: str = "app.cpu"
    labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.start_ns < 0:
            raise ValueError(f"start_ns must be >= 0, got {self.start_ns}")
        if self.end_ns < self.start_ns:
            raise ValueError(f"end_ns ({self.end_ns}) must be >= start_ns ({self.start_ns})")
        if self.sample_count < 0:
            raise ValueError(f"sample_count must be >= 0, got {self.sample_count}")
        stacks = dict(self.stacks)
        for stack, count in stacks.items():
            if count < 0:
                raise ValueError(f"stack count must be >= 0, got {count} for {stack!r}")
        object.__setattr__(self, "stacks", MappingProxyType(stacks))
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    @property
    def duration_ns(self) -> int:
        return self.end_ns - self.start_ns

    def to_folded(self) -> str:
        """Render stacks in folded format, one ``stack count`` line each."""
        lines = [f"{stack} {count}" for stack, count in sorted(self.stacks.items())]
        return "\n".join(lines) + "\n" if lines else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_ns": self.start_ns,
            "end_ns": self.end_ns,
            "stacks": dict(self.stacks),
            "sample_count": self.sample_count,
            "application_name": self.application_name,
            "labels": dict(self.labels),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        return cls(
            start_ns=int(data["start_ns"]),
            end_ns=int(data["end_ns"]),
            stacks={str(k): int(v) for k, v in data.get("stacks", {}).items()},
            sample_count=int(data.get("sample_count", 0)),
            application_name=str(data.get("application_name", "app.cpu")),
            labels=dict(data.get("labels", {})),
        )
