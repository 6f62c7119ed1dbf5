from __future__ import annotations

import asyncio
import threading
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any, cast

from core.config import Config
from core.contracts import Snapshot


class InMemoryBus:
    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(asyncio.Queue)
        self.published: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.closed = False

    async def publish_json(self, topic: str, payload: dict[str, Any]) -> None:
        self.published[topic].append(payload)
        await self._queues[topic].put(payload)

    def subscribe(self, topic: str) -> AsyncIterator[dict[str, Any]]:
        queue = self._queues[topic]

        async def generator() -> AsyncIterator[dict[str, Any]]:
            while True:
                item = await queue.get()
                yield item

        return generator()

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Monotonic nanosecond clock advancing ``step_ns`` per call."""

    def __init__(self, start_ns: int = 1_000_000_000, step_ns: int = 1_000) -> None:
        self.now_ns = start_ns
        self.step_ns = step_ns

    def __call__(self) -> int:
        self.now_ns += self.step_ns
        return self.now_ns


class FakeProfiler:
    """Profiler double recording every call made by the controller."""

    def __init__(
        self,
        *,
        samples_per_window: int = 3,
        fail_start: bool = False,
        fail_dump: bool = False,
    ) -> None:
        self.samples_per_window = samples_per_window
        self.fail_start = fail_start
        self.fail_dump = fail_dump
        self.running = False
        self.calls: list[str] = []
        self.windows: list[tuple[int, int]] = []
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            self.calls.append("start")
            if self.fail_start:
                raise RuntimeError("profiler failed to start")
            self.running = True

    def stop(self) -> None:
        with self._lock:
            self.calls.append("stop")
            self.running = False

    def dump_profile(self, start_ns: int, end_ns: int) -> Snapshot | None:
        with self._lock:
            self.calls.append("dump")
            if self.fail_dump:
                raise RuntimeError("dump failed")
            self.windows.append((start_ns, end_ns))
            if self.samples_per_window == 0:
                return None
            return Snapshot(
                start_ns=start_ns,
                end_ns=end_ns,
                stacks={"main;work": self.samples_per_window},
                sample_count=self.samples_per_window,
            )


class RecordingExporter:
    def __init__(self, fail: bool = False, delay_sec: float = 0.0) -> None:
        self.fail = fail
        self.delay_sec = delay_sec
        self.snapshots: list[Snapshot] = []
        self.threads: list[str] = []
        self._lock = threading.Lock()

    def export(self, snapshot: Snapshot) -> None:
        if self.delay_sec:
            threading.Event().wait(self.delay_sec)
        if self.fail:
            raise ConnectionError("collector unreachable")
        with self._lock:
            self.snapshots.append(snapshot)
            self.threads.append(threading.current_thread().name)


class ManualHandle:
    def __init__(self, kind: str, delay_sec: float, callback: Callable[[], Any]) -> None:
        self.kind = kind
        self.delay_sec = delay_sec
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        return self._cancelled


class ManualTimer:
    """Timer double whose tasks only run when a test fires them."""

    def __init__(self, fail_periodic: bool = False) -> None:
        self.fail_periodic = fail_periodic
        self.handles: list[ManualHandle] = []
        self.shut_down = False

    def schedule_once(self, delay_sec: float, callback: Callable[[], Any]) -> ManualHandle:
        handle = ManualHandle("once", delay_sec, callback)
        self.handles.append(handle)
        return handle

    def schedule_periodic(self, interval_sec: float, callback: Callable[[], Any]) -> ManualHandle:
        if self.fail_periodic:
            raise RuntimeError("timer unavailable")
        handle = ManualHandle("periodic", interval_sec, callback)
        self.handles.append(handle)
        return handle

    def shutdown(self, timeout_sec: float = 5.0) -> None:
        self.shut_down = True

    def pending(self, kind: str) -> list[ManualHandle]:
        return [h for h in self.handles if h.kind == kind and not h.cancelled()]

    def latest(self, kind: str) -> ManualHandle:
        return [h for h in self.handles if h.kind == kind][-1]

    def fire(self, kind: str) -> None:
        """Run the newest ``kind`` task as the timer thread would."""
        self.latest(kind).callback()


def build_test_config(tmp_path: Path, **agent: Any) -> Config:
    cfg_dict = {
        "app": {"name": "test", "env": "test"},
        "logging": {"level": "INFO", "json_output": False, "log_dir": str(tmp_path / "logs")},
        "agent": {"upload_interval_sec": 0, **agent},
        "profiler": {"sample_interval_ms": 5},
        "export": {"kind": "journal", "journal_path": str(tmp_path / "snapshots.ndjson")},
        "triggers": {
            "http": {"enabled": True, "bind_host": "127.0.0.1", "port": 0},
            "signals": {"enabled": False},
            "bus": {"enabled": False},
        },
    }
    return cast(Config, Config.model_validate(cfg_dict))
