"""Serialized timer service for session timeouts and periodic exports."""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections.abc import Callable
from typing import Any

import structlog


class TimerHandle:
    """Handle to a scheduled task.

    Cancellation is cooperative: a callback that is already running finishes;
    only pending or future firings are prevented.
    """

    def __init__(self, future: concurrent.futures.Future[None], name: str) -> None:
        self._future = future
        self.name = name

    def cancel(self) -> None:
        self._future.cancel()

    def done(self) -> bool:
        return self._future.done()

    def cancelled(self) -> bool:
        return self._future.cancelled()


class TimerService:
    """Runs timeout and periodic callbacks on one dedicated thread.

    Callbacks execute one at a time on the timer thread, so a periodic export
    can never overlap another periodic export or a timeout-triggered stop.
    The thread hosts a private asyncio event loop and is started lazily on the
    first schedule call.

    Attributes:
        name: Thread name, also used in log events
    """

    def __init__(self, name: str = "profiler-timer", logger: Any | None = None) -> None:
        self.name = name
        self._log = logger or structlog.get_logger("controller.timer")
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def thread_ident(self) -> int | None:
        return self._thread.ident if self._thread is not None else None

    def schedule_once(self, delay_sec: float, callback: Callable[[], Any]) -> TimerHandle:
        """Run ``callback`` once after ``delay_sec`` seconds.

        Raises:
            RuntimeError: If the service has been shut down
        """
        return self._submit(self._run_once(max(delay_sec, 0.0), callback), "once")

    def schedule_periodic(self, interval_sec: float, callback: Callable[[], Any]) -> TimerHandle:
        """Run ``callback`` every ``interval_sec`` seconds at a fixed rate.

        The first run happens one interval from now. Firings missed while a
        slow callback was running are skipped rather than queued.

        Raises:
            ValueError: If interval_sec <= 0
            RuntimeError: If the service has been shut down
        """
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be > 0, got {interval_sec}")
        return self._submit(self._run_periodic(interval_sec, callback), "periodic")

    def shutdown(self, timeout_sec: float = 5.0) -> None:
        """Cancel pending tasks, stop the loop and join the timer thread.

        Safe to call more than once. Called from the timer thread itself, it
        stops the loop without joining.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            loop, thread = self._loop, self._thread

        if loop is None or thread is None:
            return

        loop.call_soon_threadsafe(loop.stop)
        if threading.current_thread() is not thread:
            thread.join(timeout_sec)
            if thread.is_alive():
                self._log.warning("timer_thread_join_timeout", thread=self.name)
        self._log.info("timer_stopped", thread=self.name)

    def _submit(self, coro: Any, kind: str) -> TimerHandle:
        with self._lock:
            if self._closed:
                coro.close()
                raise RuntimeError("Timer service is shut down")
            loop = self._ensure_started()
            future = asyncio.run_coroutine_threadsafe(coro, loop)
        return TimerHandle(future, kind)

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop

        loop = asyncio.new_event_loop()
        ready = threading.Event()

        def run() -> None:
            asyncio.set_event_loop(loop)
            loop.call_soon(ready.set)
            try:
                loop.run_forever()
            finally:
                pending = asyncio.all_tasks(loop)
                for task in pending:
                    task.cancel()
                if pending:
                    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
                loop.close()

        thread = threading.Thread(target=run, name=self.name, daemon=True)
        thread.start()
        ready.wait()
        self._loop = loop
        self._thread = thread
        self._log.debug("timer_started", thread=self.name)
        return loop

    def _invoke(self, callback: Callable[[], Any], kind: str) -> None:
        try:
            callback()
        except Exception:
            self._log.exception("timer_callback_failed", kind=kind)

    async def _run_once(self, delay_sec: float, callback: Callable[[], Any]) -> None:
        await asyncio.sleep(delay_sec)
        self._invoke(callback, "once")

    async def _run_periodic(self, interval_sec: float, callback: Callable[[], Any]) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + interval_sec
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            self._invoke(callback, "periodic")
            next_at += interval_sec
            now = loop.time()
            if next_at <= now:
                skipped = int((now - next_at) // interval_sec) + 1
                next_at += skipped * interval_sec
                self._log.warning("periodic_firings_skipped", count=skipped)
