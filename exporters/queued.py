"""Bounded asynchronous export queue."""

from __future__ import annotations

import queue
import threading
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from controller.contracts import ExporterProto
    from core.contracts import Snapshot
    from telemetry.registry import MetricRegistry

_STOP = object()


class QueuedExporter:
    """Hands snapshots to a worker thread so ``export`` returns immediately.

    When the queue is full the oldest pending snapshot is dropped to make room.
    Failures of the wrapped exporter are logged and counted, never raised to
    the caller.

    Attributes:
        capacity: Maximum number of pending snapshots
    """

    def __init__(
        self,
        delegate: ExporterProto,
        capacity: int = 16,
        registry: MetricRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be > 0, got {capacity}")
        self.capacity = capacity
        self._delegate = delegate
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=capacity)
        self._log = logger or structlog.get_logger("exporters.queued")
        self._put_lock = threading.Lock()
        self._closed = False
        self._dropped = (
            registry.counter("profiler_export_queue_dropped_total", "Snapshots dropped on overflow")
            if registry is not None
            else None
        )
        self._delivery_failures = (
            registry.counter("profiler_export_delivery_failures_total", "Delegate export failures")
            if registry is not None
            else None
        )
        self._worker = threading.Thread(target=self._drain, name="export-queue", daemon=True)
        self._worker.start()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def export(self, snapshot: Snapshot) -> None:
        """Enqueue a snapshot.

        Raises:
            RuntimeError: If the exporter has been closed
        """
        with self._put_lock:
            if self._closed:
                raise RuntimeError("Export queue is closed")
            while True:
                try:
                    self._queue.put_nowait(snapshot)
                    return
                except queue.Full:
                    self._drop_oldest()

    def close(self, timeout_sec: float = 10.0) -> None:
        """Deliver what is pending, then stop the worker."""
        with self._put_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._queue.put(_STOP, timeout=timeout_sec)
        except queue.Full:
            self._log.warning("export_queue_close_timeout", pending=self.pending)
            return
        self._worker.join(timeout_sec)
        if self._worker.is_alive():
            self._log.warning("export_queue_close_timeout", pending=self.pending)

    def _drop_oldest(self) -> None:
        try:
            dropped = self._queue.get_nowait()
        except queue.Empty:
            return
        self._queue.task_done()
        if self._dropped is not None:
            self._dropped.inc()
        self._log.warning(
            "export_queue_overflow",
            window_start_ns=dropped.start_ns,
            window_end_ns=dropped.end_ns,
            capacity=self.capacity,
        )

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                try:
                    self._delegate.export(item)
                except Exception:
                    if self._delivery_failures is not None:
                        self._delivery_failures.inc()
                    self._log.exception(
                        "export_delivery_failed",
                        window_start_ns=item.start_ns,
                        window_end_ns=item.end_ns,
                    )
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until every queued snapshot has been processed."""
        self._queue.join()
