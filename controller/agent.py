"""Agent context: builds and owns the profiling control plane."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from controller.scheduler import ContinuousScheduler, OnDemandScheduler
from controller.session import SessionController
from controller.timer import TimerService
from core.bus import Bus
from exporters.http import HttpExporter, RetryConfig, RetryPolicy
from exporters.journal import JournalExporter
from exporters.queued import QueuedExporter
from profiler.sampler import StackSampler
from telemetry.registry import MetricRegistry
from triggers.bus import BusTrigger
from triggers.http import HttpTrigger
from triggers.signals import SignalTrigger

if TYPE_CHECKING:
    from controller.contracts import ExporterProto, ProfilerProto, SchedulerProto
    from core.config import Config


@dataclass
class TriggerBinding:
    """Start/stop hooks of one trigger, under a name used in logs."""

    name: str
    start: Callable[[], None]
    stop: Callable[[], None]
    target: Any = None


class ProfilingAgent:
    """Owns the controller, its scheduler, the export pipeline and the triggers.

    ``start`` arms (or, in continuous mode, starts) profiling and brings up
    each trigger independently; a trigger that fails to come up is logged and
    left out while the others keep working. ``stop`` tears everything down in
    reverse order and flushes pending exports.
    """

    def __init__(
        self,
        *,
        controller: SessionController,
        scheduler: SchedulerProto,
        profiler: ProfilerProto,
        triggers: list[TriggerBinding] | None = None,
        closers: list[Callable[[], None]] | None = None,
        enabled: bool = True,
        logger: Any | None = None,
    ) -> None:
        self.controller = controller
        self.scheduler = scheduler
        self.profiler = profiler
        self.enabled = enabled
        self._triggers = list(triggers or [])
        self._closers = list(closers or [])
        self._active_triggers: list[TriggerBinding] = []
        self._started = False
        self._log = logger or structlog.get_logger("controller.agent")

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        registry: MetricRegistry | None = None,
        exporter: ExporterProto | None = None,
        profiler: ProfilerProto | None = None,
    ) -> ProfilingAgent:
        """Assemble an agent from validated configuration.

        ``exporter`` and ``profiler`` replace the configured implementations
        when given.
        """
        registry = registry or MetricRegistry()
        agent_cfg = config.agent
        closers: list[Callable[[], None]] = []

        if exporter is None:
            delegate = _build_exporter(config)
            queued = QueuedExporter(delegate, capacity=config.export.queue_size, registry=registry)
            closers.extend([queued.close, delegate.close])
            exporter = queued

        if profiler is None:
            profiler = StackSampler(
                interval_sec=config.profiler.sample_interval_ms / 1000.0,
                max_depth=config.profiler.max_depth,
                application_name=agent_cfg.application_name,
                labels={"service": config.app.name, "env": config.app.env},
            )

        controller = SessionController(
            timer=TimerService(),
            exporter=exporter,
            upload_interval_sec=agent_cfg.upload_interval_sec,
            registry=registry,
        )

        scheduler: SchedulerProto
        if agent_cfg.on_demand:
            scheduler = OnDemandScheduler(controller)
        else:
            scheduler = ContinuousScheduler(controller, agent_cfg.continuous_upload_interval_sec)

        triggers: list[TriggerBinding] = []
        # triggers only make sense while the controller waits for them
        if agent_cfg.on_demand:
            triggers = _build_triggers(config, controller, registry)

        return cls(
            controller=controller,
            scheduler=scheduler,
            profiler=profiler,
            triggers=triggers,
            closers=closers,
            enabled=agent_cfg.enabled,
        )

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def active_triggers(self) -> list[str]:
        return [binding.name for binding in self._active_triggers]

    def trigger(self, name: str) -> Any:
        """Return the trigger object registered under ``name``.

        Raises:
            KeyError: If no trigger has that name
        """
        for binding in self._triggers:
            if binding.name == name:
                return binding.target
        raise KeyError(name)

    def start(self) -> bool:
        """Arm the controller and bring up the triggers.

        Returns:
            False when the agent is disabled by configuration

        Raises:
            RuntimeError: If the agent is already started
        """
        if not self.enabled:
            self._log.info("agent_disabled")
            return False
        if self._started:
            raise RuntimeError("Profiling agent already started")

        self.scheduler.start(self.profiler)
        for binding in self._triggers:
            try:
                binding.start()
            except Exception as exc:
                self._log.error("trigger_transport_failed", trigger=binding.name, error=str(exc))
                continue
            self._active_triggers.append(binding)

        self._started = True
        self._log.info("agent_started", triggers=self.active_triggers)
        return True

    def stop(self) -> None:
        """Stop triggers, end any session and flush the export pipeline.

        Also releases the resources of an agent that never started. A stopped
        agent cannot be started again.
        """
        if self._started:
            for binding in reversed(self._active_triggers):
                try:
                    binding.stop()
                except Exception:
                    self._log.exception("trigger_stop_failed", trigger=binding.name)
            self._active_triggers.clear()
            self.scheduler.stop()

        self.controller.shutdown()
        closers, self._closers = self._closers, []
        for close in closers:
            close()
        if self._started:
            self._started = False
            self._log.info("agent_stopped")


def _build_exporter(config: Config) -> JournalExporter | HttpExporter:
    export_cfg = config.export
    if export_cfg.kind == "http":
        return HttpExporter(
            export_cfg.server_address,
            timeout_sec=export_cfg.timeout_sec,
            sample_rate_hz=max(int(round(1000.0 / config.profiler.sample_interval_ms)), 1),
            retry=RetryPolicy(config=RetryConfig(max_attempts=export_cfg.max_attempts)),
        )
    return JournalExporter(export_cfg.journal_path)


def _build_triggers(
    config: Config,
    controller: SessionController,
    registry: MetricRegistry,
) -> list[TriggerBinding]:
    triggers_cfg = config.triggers
    agent_cfg = config.agent
    bindings: list[TriggerBinding] = []

    if triggers_cfg.http.enabled:
        http = HttpTrigger(
            controller,
            bind_host=triggers_cfg.http.bind_host,
            port=triggers_cfg.http.port,
            default_duration_sec=agent_cfg.http_default_duration_sec,
            auth_token=triggers_cfg.http.auth_token,
            registry=registry,
        )
        bindings.append(TriggerBinding("http", http.start, http.stop, http))

    if triggers_cfg.signals.enabled:
        signals = SignalTrigger(
            controller, default_duration_sec=agent_cfg.signal_default_duration_sec
        )
        bindings.append(TriggerBinding("signals", signals.register, signals.close, signals))

    if triggers_cfg.bus.enabled:
        bus = BusTrigger(
            controller,
            Bus(triggers_cfg.bus.redis_url),
            topic=triggers_cfg.bus.topic,
            results_topic=triggers_cfg.bus.results_topic,
            default_duration_sec=agent_cfg.http_default_duration_sec,
        )
        bindings.append(TriggerBinding("bus", bus.start, bus.stop, bus))

    return bindings
