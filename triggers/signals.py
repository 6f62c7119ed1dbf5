from __future__ import annotations

import queue
import signal
import threading
from types import FrameType
from typing import TYPE_CHECKING, Any

import structlog

from controller.contracts import TriggerTransportError

if TYPE_CHECKING:
    from controller.contracts import ProfilingResult
    from controller.session import SessionController

DEFAULT_DURATION_SEC = 90.0

_STOP = object()


class SignalTrigger:
    """Maps SIGUSR1 to start and SIGUSR2 to stop.

    The installed handlers only enqueue the signal number. A dispatcher thread
    makes the controller call, so a handler never waits on the session lock
    while the main thread may already hold it.
    """

    def __init__(
        self,
        controller: SessionController,
        *,
        default_duration_sec: float = DEFAULT_DURATION_SEC,
        logger: Any | None = None,
    ) -> None:
        self.default_duration_sec = default_duration_sec
        self._controller = controller
        self._log = logger or structlog.get_logger("triggers.signals")
        self._queue: queue.SimpleQueue[Any] = queue.SimpleQueue()
        self._previous: dict[int, Any] = {}
        self._thread: threading.Thread | None = None

    @property
    def registered(self) -> bool:
        return bool(self._previous)

    def register(self) -> None:
        """Install the handlers and start the dispatcher.

        Raises:
            TriggerTransportError: If the platform lacks SIGUSR1/SIGUSR2 or the
                call is made off the main thread
        """
        if self.registered:
            return
        start_sig = getattr(signal, "SIGUSR1", None)
        stop_sig = getattr(signal, "SIGUSR2", None)
        if start_sig is None or stop_sig is None:
            raise TriggerTransportError("SIGUSR1/SIGUSR2 are not supported on this platform")
        if threading.current_thread() is not threading.main_thread():
            raise TriggerTransportError("Signal handlers can only be installed from the main thread")

        self._thread = threading.Thread(target=self._dispatch_loop, name="signal-trigger", daemon=True)
        self._thread.start()
        try:
            for sig in (start_sig, stop_sig):
                self._previous[sig] = signal.signal(sig, self._handle)
        except (OSError, ValueError) as exc:
            self.close()
            raise TriggerTransportError(f"Failed to install signal handlers: {exc}") from exc
        self._log.info("signal_trigger_registered", start_signal="SIGUSR1", stop_signal="SIGUSR2")

    def close(self, timeout_sec: float = 5.0) -> None:
        """Restore the previous handlers and stop the dispatcher."""
        for sig, previous in self._previous.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()
        if self._thread is not None:
            self._queue.put(_STOP)
            self._thread.join(timeout_sec)
            self._thread = None

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        self._queue.put(signum)

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self.dispatch(item)
            except Exception:
                self._log.exception("signal_dispatch_failed", signal=signal.Signals(item).name)

    def dispatch(self, signum: int) -> ProfilingResult | None:
        """Run the controller operation bound to ``signum`` and log the outcome."""
        name = signal.Signals(signum).name
        if signum == signal.SIGUSR1:
            result = self._controller.start(self.default_duration_sec)
        elif signum == signal.SIGUSR2:
            result = self._controller.stop()
        else:
            self._log.warning("signal_ignored", signal=name)
            return None

        if result.success:
            self._log.info("signal_handled", signal=name, message=result.message)
        else:
            self._log.warning("signal_rejected", signal=name, code=result.code, message=result.message)
        return result
