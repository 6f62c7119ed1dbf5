"""On-demand profiling session controller."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from controller.contracts import (
    ControllerState,
    ExporterProto,
    ProfilerProto,
    ProfilingResult,
    RegistrationError,
)
from telemetry.registry import MetricRegistry

if TYPE_CHECKING:
    from controller.timer import TimerHandle, TimerService
    from core.contracts import Snapshot

# Consecutive export failures before an export_degraded warning is logged
DEGRADED_EXPORT_THRESHOLD = 3


@dataclass
class _Session:
    session_id: int
    window_start_ns: int
    duration_sec: float
    upload_interval_sec: float
    timeout_task: TimerHandle | None = None
    periodic_task: TimerHandle | None = None


@dataclass(frozen=True)
class _ClosedWindow:
    """Result of closing a window under the lock, exported after release."""

    session_id: int
    snapshot: Snapshot | None
    error: str | None


def _describe_duration(duration_sec: float) -> str:
    if duration_sec <= 0:
        return "an indefinite period"
    if duration_sec.is_integer():
        return f"{int(duration_sec)} seconds"
    return f"{duration_sec!r} seconds"


class SessionController:
    """State machine for one process-local profiling session.

    States: ``unarmed`` until a profiler is registered, ``idle`` when armed,
    ``active`` while a session runs. ``start``/``stop``/periodic ticks are
    serialized behind one lock that covers the profiler calls, the window
    bookkeeping and timer scheduling; exporting a closed window happens after
    the lock is released so a slow export pipeline never stalls triggers.

    Windows are contiguous: each tick ends the current window at ``now`` and
    starts the next one at that same instant.

    Attributes:
        upload_interval_sec: Default periodic export interval (0 disables)
    """

    def __init__(
        self,
        *,
        timer: TimerService,
        exporter: ExporterProto | None = None,
        profiler: ProfilerProto | None = None,
        upload_interval_sec: float = 0.0,
        registry: MetricRegistry | None = None,
        clock: Callable[[], int] | None = None,
        logger: Any | None = None,
    ) -> None:
        self.upload_interval_sec = max(upload_interval_sec, 0.0)
        self._timer = timer
        self._exporter = exporter
        self._profiler = profiler
        self._clock = clock or time.time_ns
        self._log = logger or structlog.get_logger("controller.session")
        self._lock = threading.Lock()
        self._session: _Session | None = None
        self._active = False
        self._closed = False
        self._next_session_id = 1
        self._consecutive_export_failures = 0
        self._streak_lock = threading.Lock()

        self.registry = registry or MetricRegistry()
        self._sessions_started = self.registry.counter(
            "profiler_sessions_started_total", "Profiling sessions started"
        )
        self._sessions_stopped = self.registry.counter(
            "profiler_sessions_stopped_total", "Profiling sessions ended", ["reason"]
        )
        self._exports = self.registry.counter(
            "profiler_exports_total", "Snapshot export attempts", ["outcome"]
        )
        self._tick_failures = self.registry.counter(
            "profiler_tick_failures_total", "Failures inside a window close", ["stage"]
        )
        self._export_duration = self.registry.histogram(
            "profiler_export_duration_seconds", "Time spent handing snapshots to the exporter"
        )
        self._active_gauge = self.registry.gauge(
            "profiler_session_active", "1 while a profiling session is active"
        )
        self._failure_streak_gauge = self.registry.gauge(
            "profiler_export_consecutive_failures", "Export failures since the last success"
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_profiler(self, profiler: ProfilerProto) -> None:
        """Arm the controller with a profiler without starting it.

        Raises:
            RegistrationError: If a session is active or the controller is shut down
        """
        with self._lock:
            self._check_registration("profiler")
            self._profiler = profiler
        self._log.info("profiler_registered", profiler=type(profiler).__name__)

    def register_exporter(self, exporter: ExporterProto) -> None:
        """Set the export pipeline.

        Raises:
            RegistrationError: If a session is active or the controller is shut down
        """
        with self._lock:
            self._check_registration("exporter")
            self._exporter = exporter
        self._log.info("exporter_registered", exporter=type(exporter).__name__)

    def _check_registration(self, what: str) -> None:
        if self._closed:
            raise RegistrationError(f"Cannot register {what}: controller is shut down")
        if self._session is not None:
            raise RegistrationError(f"Cannot register {what} while a session is active")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self) -> bool:
        """Return whether a session is active. Lock-free."""
        return self._active

    @property
    def state(self) -> ControllerState:
        if self._active:
            return "active"
        if self._closed or self._profiler is None:
            return "unarmed"
        return "idle"

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(
        self,
        duration_sec: float | None = None,
        upload_interval_sec: float | None = None,
    ) -> ProfilingResult:
        """Start a session.

        Args:
            duration_sec: Session length; None, <= 0 or non-finite runs until ``stop``
            upload_interval_sec: Periodic export interval for this session;
                None uses the controller default, <= 0 disables periodic export

        Returns:
            ProfilingResult; ``already_active`` and ``not_initialized`` have no
            side effects
        """
        duration = float(duration_sec or 0.0)
        if not math.isfinite(duration) or duration < 0:
            duration = 0.0
        interval = self.upload_interval_sec if upload_interval_sec is None else upload_interval_sec
        interval = max(interval, 0.0)

        with self._lock:
            if self._session is not None:
                return ProfilingResult.failure("already_active", "Profiling session already active")
            if self._closed:
                return ProfilingResult.failure("not_initialized", "Profiling controller shut down")
            profiler = self._profiler
            if profiler is None:
                return ProfilingResult.failure("not_initialized", "Profiler not initialized")
            if self._exporter is None:
                return ProfilingResult.failure("not_initialized", "Exporter not initialized")

            session = _Session(
                session_id=self._next_session_id,
                window_start_ns=self._clock(),
                duration_sec=duration,
                upload_interval_sec=interval,
            )
            self._next_session_id += 1

            profiler.start()
            try:
                if duration > 0:
                    session.timeout_task = self._timer.schedule_once(
                        duration, lambda: self._expire(session.session_id)
                    )
                if interval > 0:
                    session.periodic_task = self._timer.schedule_periodic(
                        interval, lambda: self._tick(session.session_id)
                    )
            except Exception:
                self._cancel_tasks(session)
                profiler.stop()
                raise

            self._session = session
            self._active = True

        self._sessions_started.inc()
        self._active_gauge.set(1.0)
        self._log.info(
            "session_started",
            session_id=session.session_id,
            duration_sec=duration,
            upload_interval_sec=interval,
        )
        return ProfilingResult.ok(f"Profiling started for {_describe_duration(duration)}")

    def stop(self) -> ProfilingResult:
        """Stop the active session and export its final window.

        The controller always returns to idle, even when the final export
        fails; the result then carries ``export_failed``.
        """
        closed = self._close_session(expected_session_id=None, reason="explicit")
        if closed is None:
            return ProfilingResult.failure("no_active_session", "No active profiling session")
        return self._finish(closed)

    def shutdown(self) -> None:
        """Stop any active session, release the timer thread, disarm for good."""
        with self._lock:
            self._closed = True
        closed = self._close_session(expected_session_id=None, reason="shutdown")
        if closed is not None:
            self._finish(closed)
        self._timer.shutdown()
        self._log.info("controller_shutdown")

    # ------------------------------------------------------------------
    # Timer callbacks (timer thread)
    # ------------------------------------------------------------------

    def _expire(self, session_id: int) -> None:
        closed = self._close_session(expected_session_id=session_id, reason="timeout")
        if closed is None:
            # an explicit stop won the race; nothing left to do
            return
        result = self._finish(closed)
        self._log.info("session_timed_out", session_id=session_id, message=result.message)

    def _tick(self, session_id: int) -> None:
        """Close the current window, export it and open the next one."""
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                return
            profiler = self._profiler
            assert profiler is not None
            now = self._clock()
            snapshot = None
            error = None
            try:
                profiler.stop()
                snapshot = profiler.dump_profile(session.window_start_ns, now)
            except Exception as exc:
                error = str(exc)
                self._tick_failures.inc(labels={"stage": "dump"})
                self._log.exception("periodic_dump_failed", session_id=session_id)
            session.window_start_ns = now
            try:
                profiler.start()
            except Exception:
                self._tick_failures.inc(labels={"stage": "restart"})
                self._log.exception("periodic_restart_failed", session_id=session_id)

        if error is None:
            self._deliver(snapshot, session_id=session_id, final=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _close_session(self, expected_session_id: int | None, reason: str) -> _ClosedWindow | None:
        with self._lock:
            session = self._session
            if session is None:
                return None
            if expected_session_id is not None and session.session_id != expected_session_id:
                return None

            self._cancel_tasks(session)
            profiler = self._profiler
            assert profiler is not None
            snapshot = None
            error = None
            try:
                profiler.stop()
                snapshot = profiler.dump_profile(session.window_start_ns, self._clock())
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                self._tick_failures.inc(labels={"stage": "final_dump"})
                self._log.exception("final_dump_failed", session_id=session.session_id)
            finally:
                self._session = None
                self._active = False

        self._active_gauge.set(0.0)
        self._sessions_stopped.inc(labels={"reason": reason})
        self._log.info("session_stopped", session_id=session.session_id, reason=reason)
        return _ClosedWindow(session_id=session.session_id, snapshot=snapshot, error=error)

    def _finish(self, closed: _ClosedWindow) -> ProfilingResult:
        error = closed.error
        if error is None:
            error = self._deliver(closed.snapshot, session_id=closed.session_id, final=True)
        if error is not None:
            return ProfilingResult.failure("export_failed", f"Failed to stop profiling: {error}")
        return ProfilingResult.ok("Profiling stopped and data sent")

    @staticmethod
    def _cancel_tasks(session: _Session) -> None:
        if session.timeout_task is not None:
            session.timeout_task.cancel()
            session.timeout_task = None
        if session.periodic_task is not None:
            session.periodic_task.cancel()
            session.periodic_task = None

    def _deliver(self, snapshot: Snapshot | None, *, session_id: int, final: bool) -> str | None:
        """Hand a snapshot to the exporter. Returns an error message on failure."""
        if snapshot is None:
            self._exports.inc(labels={"outcome": "empty"})
            return None

        exporter = self._exporter
        assert exporter is not None
        started = time.perf_counter()
        try:
            exporter.export(snapshot)
        except Exception as exc:
            self._exports.inc(labels={"outcome": "failed"})
            self._record_export_failure()
            self._log.exception(
                "final_export_failed" if final else "periodic_export_failed",
                session_id=session_id,
                window_start_ns=snapshot.start_ns,
                window_end_ns=snapshot.end_ns,
            )
            return str(exc) or type(exc).__name__
        finally:
            self._export_duration.observe(time.perf_counter() - started)

        self._exports.inc(labels={"outcome": "ok"})
        with self._streak_lock:
            self._consecutive_export_failures = 0
            self._failure_streak_gauge.set(0.0)
        self._log.debug(
            "snapshot_exported",
            session_id=session_id,
            final=final,
            window_start_ns=snapshot.start_ns,
            window_end_ns=snapshot.end_ns,
        )
        return None

    def _record_export_failure(self) -> None:
        with self._streak_lock:
            self._consecutive_export_failures += 1
            streak = self._consecutive_export_failures
            self._failure_streak_gauge.set(float(streak))
        if streak == DEGRADED_EXPORT_THRESHOLD:
            self._log.warning("export_degraded", consecutive_failures=streak)
