"""HTTP control API for on-demand profiling."""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import json
import math
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import urlsplit

import structlog

from controller.contracts import TriggerTransportError
from telemetry.prometheus import CONTENT_TYPE as METRICS_CONTENT_TYPE
from telemetry.prometheus import render_metrics

if TYPE_CHECKING:
    from controller.contracts import ProfilingResult
    from controller.session import SessionController
    from telemetry.registry import MetricRegistry

T = TypeVar("T")

DEFAULT_DURATION_SEC = 30.0
MAX_BODY_BYTES = 64 * 1024

_STATUS_MESSAGES = {
    200: "OK",
    400: "Bad Request",
    401: "Unauthorized",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Payload Too Large",
    500: "Internal Server Error",
}


def coerce_duration(raw: Any, default: float) -> float:
    """Validate a requested duration in seconds.

    Missing, boolean, non-numeric, non-finite and negative values all fall
    back to ``default``.
    """
    if raw is None or isinstance(raw, bool):
        return default
    try:
        duration = float(raw)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(duration) or duration < 0:
        return default
    return duration


def parse_duration(body: bytes, default: float) -> float:
    """Extract ``duration`` (seconds) from a JSON request body.

    Empty, malformed or non-object bodies fall back to ``default``, as do
    durations rejected by :func:`coerce_duration`.
    """
    if not body.strip():
        return default
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError):
        return default
    if not isinstance(payload, dict):
        return default
    return coerce_duration(payload.get("duration"), default)


class HttpTrigger:
    """Serves ``/profile/start``, ``/profile/stop`` and ``/profile/status``.

    The asyncio server runs on its own thread; each controller call is
    dispatched to a bounded thread pool so a request blocked on the session
    lock never stalls the accept loop.

    Security:
        - Binds to localhost (127.0.0.1) by default
        - Optional Bearer token auth
    """

    def __init__(
        self,
        controller: SessionController,
        *,
        bind_host: str = "127.0.0.1",
        port: int = 8081,
        default_duration_sec: float = DEFAULT_DURATION_SEC,
        auth_token: str | None = None,
        registry: MetricRegistry | None = None,
        max_workers: int = 4,
        logger: Any | None = None,
    ) -> None:
        self.bind_host = bind_host
        self.port = port
        self.default_duration_sec = default_duration_sec
        self._controller = controller
        self._auth_token = auth_token
        self._registry = registry
        self._max_workers = max_workers
        self._log = logger or structlog.get_logger("triggers.http")
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._pool: concurrent.futures.ThreadPoolExecutor | None = None
        self._requests = (
            registry.counter(
                "profiler_trigger_requests_total", "HTTP trigger requests", ["route", "status"]
            )
            if registry is not None
            else None
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout_sec: float = 5.0) -> None:
        """Bind the listener and serve on a background thread.

        Raises:
            TriggerTransportError: If the listener cannot be bound
        """
        if self.running:
            return
        loop = asyncio.new_event_loop()
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="profile-http"
        )
        bound: concurrent.futures.Future[int] = concurrent.futures.Future()

        def run() -> None:
            asyncio.set_event_loop(loop)
            try:
                server = loop.run_until_complete(
                    asyncio.start_server(self._handle_client, self.bind_host, self.port)
                )
            except Exception as exc:
                bound.set_exception(exc)
                loop.close()
                return
            bound.set_result(server.sockets[0].getsockname()[1])
            try:
                loop.run_forever()
            finally:
                server.close()
                # cancel in-flight connections; each handler closes its own writer
                pending = asyncio.all_tasks(loop)
                for task in pending:
                    task.cancel()
                if pending:
                    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
                loop.run_until_complete(server.wait_closed())
                loop.close()

        thread = threading.Thread(target=run, name="profile-http-server", daemon=True)
        thread.start()
        try:
            self.port = bound.result(timeout_sec)
        except Exception as exc:
            pool.shutdown(wait=False)
            raise TriggerTransportError(
                f"HTTP trigger failed to bind {self.bind_host}:{self.port}: {exc}"
            ) from exc

        self._loop, self._thread, self._pool = loop, thread, pool
        self._log.info(
            "http_trigger_started",
            bind_host=self.bind_host,
            port=self.port,
            auth_enabled=bool(self._auth_token),
        )

    def stop(self, timeout_sec: float = 5.0) -> None:
        """Stop the listener and release its threads."""
        loop, thread, pool = self._loop, self._thread, self._pool
        if loop is None or thread is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout_sec)
        if pool is not None:
            pool.shutdown(wait=False)
        self._loop = self._thread = self._pool = None
        self._log.info("http_trigger_stopped", port=self.port)

    async def handle_request(
        self,
        method: str,
        target: str,
        headers: dict[str, str],
        body: bytes,
    ) -> tuple[int, str, str]:
        """Route one request.

        Returns:
            (status_code, body, content_type)
        """
        path = urlsplit(target).path

        if self._auth_token:
            if headers.get("authorization", "") != f"Bearer {self._auth_token}":
                return self._error(401, "Unauthorized")

        if path == "/profile/start":
            if method != "POST":
                return self._error(405, "Method not allowed")
            duration = parse_duration(body, self.default_duration_sec)
            return await self._transition(self._controller.start, duration)

        if path == "/profile/stop":
            if method != "POST":
                return self._error(405, "Method not allowed")
            return await self._transition(self._controller.stop)

        if path == "/profile/status":
            return self._json(200, {"active": self._controller.status()})

        if path == "/metrics" and method == "GET" and self._registry is not None:
            return 200, render_metrics(self._registry), METRICS_CONTENT_TYPE

        return self._error(404, "Not found")

    async def _transition(self, fn: Callable[..., ProfilingResult], *args: Any) -> tuple[int, str, str]:
        try:
            result = await self._call(fn, *args)
        except Exception:
            self._log.exception("http_trigger_failed", operation=fn.__name__)
            return self._error(500, "Internal error")
        return self._json(200 if result.success else 400, result.to_dict(with_code=False))

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, functools.partial(fn, *args))

    @staticmethod
    def _json(status: int, payload: dict[str, Any]) -> tuple[int, str, str]:
        return status, json.dumps(payload, separators=(",", ":")), "application/json"

    def _error(self, status: int, message: str) -> tuple[int, str, str]:
        return self._json(status, {"success": False, "error": message})

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        route = "unknown"
        status = 500
        try:
            request_line = await reader.readline()
            if not request_line:
                return

            parts = request_line.decode("latin-1").strip().split()
            if len(parts) < 2:
                status = 400
                await self._send_response(writer, *self._error(400, "Bad request"))
                return

            method, target = parts[0].upper(), parts[1]
            route = urlsplit(target).path
            headers = await self._read_headers(reader)

            try:
                length = int(headers.get("content-length", "0"))
            except ValueError:
                length = 0
            if length > MAX_BODY_BYTES:
                status = 413
                await self._send_response(writer, *self._error(413, "Payload too large"))
                return
            body = await reader.readexactly(length) if length > 0 else b""

            status, payload, content_type = await self.handle_request(
                method, target, headers, body
            )
            await self._send_response(writer, status, payload, content_type)

        except Exception:
            self._log.exception("http_request_failed", route=route)
            status = 500
            try:
                await self._send_response(writer, *self._error(500, "Internal error"))
            except Exception:
                self._log.debug("http_error_response_failed", route=route, exc_info=True)
        finally:
            if self._requests is not None:
                known = route if route.startswith("/profile/") or route == "/metrics" else "other"
                self._requests.inc(labels={"route": known, "status": str(status)})
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                self._log.debug("http_close_failed", exc_info=True)

    async def _read_headers(self, reader: asyncio.StreamReader) -> dict[str, str]:
        """Read HTTP headers into a dict with lowercase keys."""
        headers: dict[str, str] = {}
        while True:
            line = await reader.readline()
            if not line or line in (b"\r\n", b"\n"):
                break
            header_str = line.decode("latin-1").strip()
            if ":" in header_str:
                key, value = header_str.split(":", 1)
                headers[key.strip().lower()] = value.strip()
        return headers

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status_code: int,
        body: str,
        content_type: str = "application/json",
    ) -> None:
        payload = body.encode("utf-8")
        head = (
            f"HTTP/1.1 {status_code} {_STATUS_MESSAGES.get(status_code, 'Unknown')}\r\n"
            f"Content-Type: {content_type}; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(head.encode("latin-1") + payload)
        await writer.drain()
