"""Wall-clock stack sampler for the threads of the current process."""

from __future__ import annotations

import sys
import threading
import time
from collections import Counter
from collections.abc import Callable
from types import FrameType
from typing import Any

import structlog

from core.contracts import Snapshot


def _frame_label(frame: FrameType) -> str:
    code = frame.f_code
    module = frame.f_globals.get("__name__", "<unknown>")
    return f"{module}:{code.co_name}:{frame.f_lineno}"


def fold_stack(frame: FrameType | None, max_depth: int) -> str:
    """Fold a frame chain into ``outer;...;inner``, keeping the innermost frames."""
    labels: list[str] = []
    while frame is not None and len(labels) < max_depth:
        labels.append(_frame_label(frame))
        frame = frame.f_back
    labels.reverse()
    return ";".join(labels)


class StackSampler:
    """Samples every thread's stack at a fixed interval on a background thread.

    Samples accumulate until ``dump_profile`` drains them into a Snapshot.
    The sampler never samples its own thread.

    Attributes:
        interval_sec: Delay between two samples
        max_depth: Innermost frames kept per stack
        application_name: Name attached to produced snapshots
    """

    def __init__(
        self,
        interval_sec: float = 0.01,
        max_depth: int = 128,
        application_name: str = "app.cpu",
        labels: dict[str, str] | None = None,
        frames_fn: Callable[[], dict[int, FrameType]] | None = None,
        logger: Any | None = None,
    ) -> None:
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be > 0, got {interval_sec}")
        self.interval_sec = interval_sec
        self.max_depth = max_depth
        self.application_name = application_name
        self.labels = dict(labels or {})
        self._frames_fn = frames_fn or sys._current_frames
        self._log = logger or structlog.get_logger("profiler.sampler")
        self._lock = threading.Lock()
        self._stacks: Counter[str] = Counter()
        self._sample_count = 0
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def sampling(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Begin sampling. No-op when already sampling."""
        if self.sampling:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name="stack-sampler", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Pause sampling and wait for the sampler thread to exit."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def sample_once(self) -> None:
        """Take one sample of every thread except the caller."""
        own_ident = threading.get_ident()
        frames = self._frames_fn()
        folded = [
            fold_stack(frame, self.max_depth)
            for ident, frame in frames.items()
            if ident != own_ident
        ]
        with self._lock:
            for stack in folded:
                if stack:
                    self._stacks[stack] += 1
                    self._sample_count += 1

    def dump_profile(self, start_ns: int, end_ns: int) -> Snapshot | None:
        """Drain accumulated samples into a Snapshot for ``[start_ns, end_ns)``."""
        with self._lock:
            stacks, self._stacks = self._stacks, Counter()
            sample_count, self._sample_count = self._sample_count, 0
        if sample_count == 0:
            return None
        return Snapshot(
            start_ns=start_ns,
            end_ns=end_ns,
            stacks=dict(stacks),
            sample_count=sample_count,
            application_name=self.application_name,
            labels=self.labels,
        )

    def _run(self, stop_event: threading.Event) -> None:
        next_at = time.monotonic()
        while not stop_event.is_set():
            try:
                self.sample_once()
            except Exception:
                self._log.exception("sample_failed")
            next_at += self.interval_sec
            delay = next_at - time.monotonic()
            if delay < 0:
                next_at = time.monotonic()
                delay = 0
            stop_event.wait(delay)
