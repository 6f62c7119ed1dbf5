"""Profiling schedulers that bridge the agent lifecycle onto the controller."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from controller.contracts import ProfilerProto
    from controller.session import SessionController


class OnDemandScheduler:
    """Defers all sampling until a trigger starts a session.

    ``start`` only registers the profiler with the controller (arming it);
    activation happens later through ``SessionController.start``. ``stop`` is
    a no-op: ending sessions belongs to the controller.
    """

    def __init__(self, controller: SessionController, logger: Any | None = None) -> None:
        self._controller = controller
        self._log = logger or structlog.get_logger("controller.scheduler")

    def start(self, profiler: ProfilerProto) -> None:
        self._controller.register_profiler(profiler)
        self._log.info("on_demand_armed")

    def stop(self) -> None:
        self._log.debug("on_demand_scheduler_stop_ignored")


class ContinuousScheduler:
    """Profiles from boot until shutdown, exporting every ``upload_interval_sec``."""

    def __init__(
        self,
        controller: SessionController,
        upload_interval_sec: float,
        logger: Any | None = None,
    ) -> None:
        if upload_interval_sec <= 0:
            raise ValueError(f"upload_interval_sec must be > 0, got {upload_interval_sec}")
        self._controller = controller
        self._upload_interval_sec = upload_interval_sec
        self._log = logger or structlog.get_logger("controller.scheduler")

    def start(self, profiler: ProfilerProto) -> None:
        self._controller.register_profiler(profiler)
        result = self._controller.start(
            duration_sec=0, upload_interval_sec=self._upload_interval_sec
        )
        if not result.success:
            raise RuntimeError(f"Continuous profiling failed to start: {result.message}")
        self._log.info("continuous_started", upload_interval_sec=self._upload_interval_sec)

    def stop(self) -> None:
        result = self._controller.stop()
        self._log.info("continuous_stopped", message=result.message)
