from __future__ import annotations

import pytest

from controller.scheduler import ContinuousScheduler, OnDemandScheduler
from controller.session import SessionController
from tests.utils import FakeProfiler, ManualTimer, RecordingExporter


def make_controller(timer: ManualTimer | None = None) -> SessionController:
    return SessionController(timer=timer or ManualTimer(), exporter=RecordingExporter())  # type: ignore[arg-type]


def test_on_demand_arms_without_starting() -> None:
    controller = make_controller()
    profiler = FakeProfiler()
    scheduler = OnDemandScheduler(controller)

    scheduler.start(profiler)

    assert controller.state == "idle"
    assert controller.status() is False
    assert profiler.calls == []


def test_on_demand_stop_leaves_session_alone() -> None:
    controller = make_controller()
    scheduler = OnDemandScheduler(controller)
    scheduler.start(FakeProfiler())
    controller.start(30)

    scheduler.stop()

    assert controller.status() is True


def test_continuous_starts_indefinite_session_with_periodic_export() -> None:
    timer = ManualTimer()
    controller = make_controller(timer)
    profiler = FakeProfiler()
    scheduler = ContinuousScheduler(controller, upload_interval_sec=10)

    scheduler.start(profiler)

    assert controller.status() is True
    assert timer.pending("once") == []
    assert [h.delay_sec for h in timer.pending("periodic")] == [10]

    scheduler.stop()
    assert controller.status() is False


def test_continuous_requires_positive_interval() -> None:
    with pytest.raises(ValueError, match="upload_interval_sec"):
        ContinuousScheduler(make_controller(), upload_interval_sec=0)


def test_continuous_start_failure_raises() -> None:
    controller = SessionController(timer=ManualTimer())  # type: ignore[arg-type]
    scheduler = ContinuousScheduler(controller, upload_interval_sec=10)

    with pytest.raises(RuntimeError, match="Exporter not initialized"):
        scheduler.start(FakeProfiler())
