"""Controller package: session state machine, timers and schedulers."""

from controller.contracts import (
    ControllerState,
    ExportError,
    ExporterProto,
    ProfilerProto,
    ProfilingResult,
    RegistrationError,
    ResultCode,
    SchedulerProto,
    TriggerTransportError,
)
from controller.scheduler import ContinuousScheduler, OnDemandScheduler
from controller.session import SessionController
from controller.timer import TimerHandle, TimerService

__all__ = [
    "ContinuousScheduler",
    "ControllerState",
    "ExportError",
    "ExporterProto",
    "OnDemandScheduler",
    "ProfilerProto",
    "ProfilingResult",
    "RegistrationError",
    "ResultCode",
    "SchedulerProto",
    "SessionController",
    "TimerHandle",
    "TimerService",
    "TriggerTransportError",
]
