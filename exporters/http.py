from __future__ import annotations

import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import structlog

from controller.contracts import ExportError
from core.contracts import Snapshot

T = TypeVar("T")

_RETRY_STATUSES = {408, 425, 429, 500, 502, 503, 504}


def _parse_retry_after(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 10.0


class RetryPolicy:
    """Retries transient failures with full-jitter exponential backoff."""

    def __init__(
        self,
        *,
        config: RetryConfig | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        rand_fn: Callable[[], float] = random.random,
        logger: Any | None = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep_fn or time.sleep
        self._rand = rand_fn
        self._log = logger or structlog.get_logger("exporters.http.retry")

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempts = 0
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                attempts += 1
                if not self._should_retry(exc) or attempts >= self._config.max_attempts:
                    raise
                delay = self._compute_delay(attempts, exc)
                self._log.warning(
                    "export_retry", attempt=attempts, delay=round(delay, 3), error=str(exc)
                )
                if delay > 0:
                    self._sleep(delay)

    def _should_retry(self, exc: Exception) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in _RETRY_STATUSES
        return isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError))

    def _compute_delay(self, attempts: int, exc: Exception) -> float:
        headers = self._extract_headers(exc)
        if headers:
            retry_after = _parse_retry_after(headers.get("Retry-After"))
            if retry_after is not None:
                return min(max(0.0, retry_after), self._config.max_delay_s)
        cap = min(
            self._config.max_delay_s,
            self._config.base_delay_s * (2 ** max(attempts - 1, 0)),
        )
        return float(max(0.0, float(self._rand()) * cap))

    @staticmethod
    def _extract_headers(exc: Exception) -> Mapping[str, Any] | None:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.headers
        return None


class HttpExporter:
    """Uploads snapshots to a profile ingest endpoint in folded format.

    Sends ``POST {server_address}/ingest`` with the window bounds in seconds,
    the application name (with labels appended as ``{k=v}``) and the folded
    stacks as the body.
    """

    def __init__(
        self,
        server_address: str,
        *,
        timeout_sec: float = 10.0,
        sample_rate_hz: int = 100,
        auth_token: str | None = None,
        retry: RetryPolicy | None = None,
        client: httpx.Client | None = None,
        logger: Any | None = None,
    ) -> None:
        self.server_address = server_address.rstrip("/")
        self.sample_rate_hz = sample_rate_hz
        headers = {"Content-Type": "text/plain"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = client or httpx.Client(timeout=timeout_sec)
        self._headers = headers
        self._retry = retry or RetryPolicy()
        self._log = logger or structlog.get_logger("exporters.http")

    @staticmethod
    def app_name(snapshot: Snapshot) -> str:
        if not snapshot.labels:
            return snapshot.application_name
        labels = ",".join(f"{k}={v}" for k, v in sorted(snapshot.labels.items()))
        return f"{snapshot.application_name}{{{labels}}}"

    def export(self, snapshot: Snapshot) -> None:
        """Upload one snapshot.

        Raises:
            ExportError: If the upload still fails after retries
        """
        params = {
            "name": self.app_name(snapshot),
            "from": str(snapshot.start_ns // 1_000_000_000),
            "until": str(-(-snapshot.end_ns // 1_000_000_000)),
            "format": "folded",
            "sampleRate": str(self.sample_rate_hz),
            "spyName": "pythonspy",
        }
        body = snapshot.to_folded()
        try:
            self._retry.call(self._post, params, body)
        except Exception as exc:
            raise ExportError(f"Upload to {self.server_address} failed: {exc}") from exc
        self._log.debug("snapshot_uploaded", name=params["name"], samples=snapshot.sample_count)

    def _post(self, params: dict[str, str], body: str) -> None:
        response = self._client.post(
            f"{self.server_address}/ingest",
            params=params,
            content=body.encode("utf-8"),
            headers=self._headers,
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()
