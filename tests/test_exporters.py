from __future__ import annotations

import threading
from pathlib import Path

import httpx
import pytest

from controller.contracts import ExportError
from core.contracts import Snapshot
from exporters.http import HttpExporter, RetryConfig, RetryPolicy
from exporters.journal import JournalExporter, read_journal
from exporters.queued import QueuedExporter
from telemetry.registry import MetricRegistry
from tests.utils import RecordingExporter


def make_snapshot(start_s: float = 100.0, end_s: float = 110.5, **kwargs: object) -> Snapshot:
    return Snapshot(
        start_ns=int(start_s * 1_000_000_000),
        end_ns=int(end_s * 1_000_000_000),
        stacks={"main;handle;parse": 4, "main;idle": 2},
        sample_count=6,
        **kwargs,  # type: ignore[arg-type]
    )


class TestJournalExporter:
    def test_appends_one_line_per_snapshot(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "snapshots.ndjson"
        exporter = JournalExporter(path)

        exporter.export(make_snapshot(100, 110))
        exporter.export(make_snapshot(110, 120, labels={"env": "test"}))
        exporter.close()

        snapshots = read_journal(path)
        assert [s.start_ns for s in snapshots] == [100_000_000_000, 110_000_000_000]
        assert snapshots[1].labels == {"env": "test"}
        assert snapshots[0].stacks == {"main;handle;parse": 4, "main;idle": 2}

    def test_close_is_idempotent(self, tmp_path: Path) -> None:
        exporter = JournalExporter(tmp_path / "j.ndjson")

        exporter.close()
        exporter.close()


class TestQueuedExporter:
    def test_delivers_in_order(self) -> None:
        delegate = RecordingExporter()
        queued = QueuedExporter(delegate, capacity=4)

        for i in range(3):
            queued.export(make_snapshot(i, i + 1))
        queued.close()

        assert [s.start_ns for s in delegate.snapshots] == [0, 1_000_000_000, 2_000_000_000]
        assert delegate.threads == ["export-queue"] * 3

    def test_overflow_drops_oldest(self) -> None:
        release = threading.Event()
        delivered: list[Snapshot] = []

        class BlockingExporter:
            def export(self, snapshot: Snapshot) -> None:
                release.wait(5)
                delivered.append(snapshot)

        registry = MetricRegistry()
        queued = QueuedExporter(BlockingExporter(), capacity=2, registry=registry)

        queued.export(make_snapshot(0, 1))  # picked up by the worker, blocks
        while queued.pending:
            threading.Event().wait(0.005)
        for i in range(1, 5):
            queued.export(make_snapshot(i, i + 1))

        release.set()
        queued.close()

        assert [s.start_ns // 1_000_000_000 for s in delivered] == [0, 3, 4]
        assert registry.counter("profiler_export_queue_dropped_total", "").get() == 2.0

    def test_delegate_failure_is_counted_not_raised(self) -> None:
        registry = MetricRegistry()
        queued = QueuedExporter(RecordingExporter(fail=True), registry=registry)

        queued.export(make_snapshot())
        queued.join()
        queued.close()

        assert registry.counter("profiler_export_delivery_failures_total", "").get() == 1.0

    def test_export_after_close_raises(self) -> None:
        queued = QueuedExporter(RecordingExporter())
        queued.close()

        with pytest.raises(RuntimeError, match="closed"):
            queued.export(make_snapshot())

    def test_rejects_non_positive_capacity(self) -> None:
        with pytest.raises(ValueError):
            QueuedExporter(RecordingExporter(), capacity=0)


class TestHttpExporter:
    def test_posts_folded_profile(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        exporter = HttpExporter(
            "http://collector:4040/",
            auth_token="abc",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

        exporter.export(make_snapshot(labels={"service": "api", "env": "prod"}))

        assert len(requests) == 1
        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/ingest"
        params = dict(request.url.params)
        assert params["name"] == "app.cpu{env=prod,service=api}"
        assert params["from"] == "100"
        assert params["until"] == "111"
        assert params["format"] == "folded"
        assert params["sampleRate"] == "100"
        assert request.headers["authorization"] == "Bearer abc"
        assert request.content == b"main;handle;parse 4\nmain;idle 2\n"

    def test_retries_transient_status(self) -> None:
        statuses = iter([503, 429, 200])
        sleeps: list[float] = []

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses))

        exporter = HttpExporter(
            "http://collector:4040",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            retry=RetryPolicy(
                config=RetryConfig(max_attempts=3, base_delay_s=0.5),
                sleep_fn=sleeps.append,
                rand_fn=lambda: 1.0,
            ),
        )

        exporter.export(make_snapshot())

        assert sleeps == [0.5, 1.0]

    def test_honours_retry_after(self) -> None:
        statuses = iter([httpx.Response(429, headers={"Retry-After": "2"}), httpx.Response(200)])
        sleeps: list[float] = []

        exporter = HttpExporter(
            "http://collector:4040",
            client=httpx.Client(transport=httpx.MockTransport(lambda r: next(statuses))),
            retry=RetryPolicy(sleep_fn=sleeps.append),
        )

        exporter.export(make_snapshot())

        assert sleeps == [2.0]

    def test_permanent_failure_raises_export_error(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(400)

        exporter = HttpExporter(
            "http://collector:4040",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            retry=RetryPolicy(sleep_fn=lambda _: None),
        )

        with pytest.raises(ExportError, match="collector:4040"):
            exporter.export(make_snapshot())
        assert calls == 1

    def test_connection_errors_exhaust_attempts(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("refused", request=request)

        exporter = HttpExporter(
            "http://collector:4040",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            retry=RetryPolicy(config=RetryConfig(max_attempts=4), sleep_fn=lambda _: None),
        )

        with pytest.raises(ExportError):
            exporter.export(make_snapshot())
        assert calls == 4
