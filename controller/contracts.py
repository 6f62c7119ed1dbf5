"""Controller contracts for on-demand profiling sessions.

This module defines the result type returned by session transitions, the
collaborator protocols the controller orchestrates (profiler, export pipeline,
profiling scheduler), and the exceptions raised at the controller's seams.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, Protocol

if TYPE_CHECKING:
    from core.contracts import Snapshot

ResultCode = Literal[
    "ok",
    "not_initialized",
    "already_active",
    "no_active_session",
    "export_failed",
]
ControllerState = Literal["unarmed", "idle", "active"]


class RegistrationError(RuntimeError):
    """Raised when a collaborator is (re)registered while a session is active."""


class TriggerTransportError(RuntimeError):
    """Raised when a trigger surface cannot bind or register."""


class ExportError(RuntimeError):
    """Raised by an exporter when a snapshot could not be delivered."""


@dataclass(frozen=True)
class ProfilingResult:
    """Uniform outcome of ``start`` and ``stop``.

    Business conditions (already active, nothing to stop, missing
    collaborators, failed final export) are reported here instead of raised.

    Attributes:
        success: Whether the transition happened as requested
        message: Human readable outcome, surfaced verbatim by triggers
        code: Machine readable outcome

    Raises:
        ValueError: If success and code disagree
    """

    success: bool
    message: str
    code: ResultCode = "ok"

    def __post_init__(self) -> None:
        if self.success != (self.code == "ok"):
            raise ValueError(f"success={self.success} is inconsistent with code={self.code!r}")

    @classmethod
    def ok(cls, message: str) -> ProfilingResult:
        return cls(success=True, message=message, code="ok")

    @classmethod
    def failure(cls, code: ResultCode, message: str) -> ProfilingResult:
        return cls(success=False, message=message, code=code)

    def to_dict(self, *, with_code: bool = True) -> dict[str, Any]:
        """Reply payload used by the triggers.

        Successes carry ``message``; failures carry ``error`` and, unless
        ``with_code`` is False, the machine readable ``code``.
        """
        if self.success:
            return {"success": True, "message": self.message}
        payload: dict[str, Any] = {"success": False, "error": self.message}
        if with_code:
            payload["code"] = self.code
        return payload


class ProfilerProto(Protocol):
    """Sampling engine driven by the controller."""

    def start(self) -> None:
        """Begin sampling. Calling it while already sampling is a no-op."""
        ...

    def stop(self) -> None:
        """Pause sampling."""
        ...

    def dump_profile(self, start_ns: int, end_ns: int) -> Snapshot | None:
        """Return the snapshot for ``[start_ns, end_ns)`` or None when empty.

        Called once per window, repeatedly across a session.
        """
        ...


class ExporterProto(Protocol):
    """Delivery pipeline for snapshots. Must be safe to call from any thread."""

    def export(self, snapshot: Snapshot) -> None: ...


class SchedulerProto(Protocol):
    """Generic profiling scheduler used by the agent at boot and shutdown."""

    def start(self, profiler: ProfilerProto) -> None: ...

    def stop(self) -> None: ...
