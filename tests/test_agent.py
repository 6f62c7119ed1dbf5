from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from controller.agent import ProfilingAgent, TriggerBinding
from controller.scheduler import ContinuousScheduler, OnDemandScheduler
from controller.session import SessionController
from exporters.journal import read_journal
from profiler.sampler import StackSampler
from tests.utils import FakeProfiler, ManualTimer, RecordingExporter, build_test_config
from triggers.http import HttpTrigger


def test_from_config_builds_on_demand_agent(tmp_path: Path) -> None:
    agent = ProfilingAgent.from_config(build_test_config(tmp_path))

    assert isinstance(agent.scheduler, OnDemandScheduler)
    assert isinstance(agent.profiler, StackSampler)
    assert agent.profiler.interval_sec == pytest.approx(0.005)
    assert agent.profiler.labels == {"service": "test", "env": "test"}
    assert agent.is_started is False

    agent.stop()


def test_http_round_trip_writes_journal(tmp_path: Path) -> None:
    cfg = build_test_config(tmp_path)
    agent = ProfilingAgent.from_config(cfg, profiler=FakeProfiler())

    assert agent.start() is True
    try:
        assert agent.active_triggers == ["http"]
        base = f"http://127.0.0.1:{agent.trigger('http').port}"

        started = httpx.post(f"{base}/profile/start", json={"duration": 60}, timeout=5.0)
        stopped = httpx.post(f"{base}/profile/stop", timeout=5.0)
    finally:
        agent.stop()

    assert started.json()["message"] == "Profiling started for 60 seconds"
    assert stopped.json() == {"success": True, "message": "Profiling stopped and data sent"}
    snapshots = read_journal(cfg.export.journal_path)
    assert len(snapshots) == 1
    assert snapshots[0].stacks == {"main;work": 3}
    assert agent.is_started is False


def test_stop_flushes_active_session(tmp_path: Path) -> None:
    cfg = build_test_config(tmp_path)
    agent = ProfilingAgent.from_config(cfg, profiler=FakeProfiler())
    agent.start()
    agent.controller.start(60)

    agent.stop()

    assert agent.controller.status() is False
    assert len(read_journal(cfg.export.journal_path)) == 1


def test_disabled_agent_does_nothing(tmp_path: Path) -> None:
    agent = ProfilingAgent.from_config(build_test_config(tmp_path, enabled=False))

    assert agent.start() is False
    assert agent.is_started is False
    assert agent.controller.state == "unarmed"

    agent.stop()


def test_second_start_raises(tmp_path: Path) -> None:
    agent = ProfilingAgent.from_config(build_test_config(tmp_path), profiler=FakeProfiler())
    agent.start()
    try:
        with pytest.raises(RuntimeError, match="already started"):
            agent.start()
    finally:
        agent.stop()


def test_continuous_mode_profiles_from_boot(tmp_path: Path) -> None:
    cfg = build_test_config(tmp_path, on_demand=False, continuous_upload_interval_sec=60)
    agent = ProfilingAgent.from_config(cfg, profiler=FakeProfiler())

    assert isinstance(agent.scheduler, ContinuousScheduler)
    agent.start()
    try:
        assert agent.controller.status() is True
        assert agent.active_triggers == []
    finally:
        agent.stop()

    assert len(read_journal(cfg.export.journal_path)) == 1


def test_failing_trigger_does_not_block_others() -> None:
    exporter = RecordingExporter()
    controller = SessionController(timer=ManualTimer(), exporter=exporter)  # type: ignore[arg-type]
    occupied = HttpTrigger(controller, port=0)
    occupied.start()
    clashing = HttpTrigger(controller, port=occupied.port)
    started: list[str] = []
    try:
        agent = ProfilingAgent(
            controller=controller,
            scheduler=OnDemandScheduler(controller),
            profiler=FakeProfiler(),
            triggers=[
                TriggerBinding("http", clashing.start, clashing.stop),
                TriggerBinding("fake", lambda: started.append("up"), lambda: started.append("down")),
            ],
        )
        agent.start()
        assert agent.active_triggers == ["fake"]
        assert controller.state == "idle"
        agent.stop()
    finally:
        occupied.stop()

    assert started == ["up", "down"]
