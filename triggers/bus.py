from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, Any

import structlog

from triggers.http import DEFAULT_DURATION_SEC, coerce_duration

if TYPE_CHECKING:
    from controller.session import SessionController
    from core.bus import BusProto


class BusTrigger:
    """Control channel over pub/sub.

    Consumes ``{"command": "start"|"stop"|"status", ...}`` messages from
    ``topic`` and publishes each outcome to ``results_topic``. A start command
    may carry ``duration``; an optional ``request_id`` is echoed back.
    """

    def __init__(
        self,
        controller: SessionController,
        bus: BusProto,
        *,
        topic: str = "profiling.control",
        results_topic: str = "profiling.control.results",
        default_duration_sec: float = DEFAULT_DURATION_SEC,
        logger: Any | None = None,
    ) -> None:
        self.topic = topic
        self.results_topic = results_topic
        self.default_duration_sec = default_duration_sec
        self._controller = controller
        self._bus = bus
        self._log = logger or structlog.get_logger("triggers.bus")
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None

    async def run(self) -> None:
        self._log.info("bus_trigger_listening", topic=self.topic)
        async for payload in self._bus.subscribe(self.topic):
            await self.handle_command(payload)

    async def handle_command(self, payload: dict[str, Any]) -> dict[str, Any]:
        command = payload.get("command")
        response: dict[str, Any] = {"command": command}
        if "request_id" in payload:
            response["request_id"] = payload["request_id"]

        try:
            if command == "start":
                duration = coerce_duration(payload.get("duration"), self.default_duration_sec)
                result = await asyncio.to_thread(self._controller.start, duration)
                response.update(result.to_dict())
            elif command == "stop":
                result = await asyncio.to_thread(self._controller.stop)
                response.update(result.to_dict())
            elif command == "status":
                response["active"] = self._controller.status()
            else:
                response.update({"success": False, "error": f"Unknown command: {command!r}"})
        except Exception:
            self._log.exception("bus_command_failed", command=command)
            response.update({"success": False, "error": "Internal error"})

        await self._bus.publish_json(self.results_topic, response)
        self._log.info("bus_command_handled", command=command, success=response.get("success"))
        return response

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run the listener on a background thread with its own event loop."""
        if self._thread is not None:
            return
        ready = threading.Event()

        async def serve() -> None:
            self._loop = asyncio.get_running_loop()
            self._task = asyncio.current_task()  # type: ignore[assignment]
            ready.set()
            try:
                await self.run()
            except asyncio.CancelledError:
                pass
            except Exception:
                self._log.exception("bus_trigger_failed", topic=self.topic)
            finally:
                await self._bus.close()

        def target() -> None:
            asyncio.run(serve())

        self._thread = threading.Thread(target=target, name="bus-trigger", daemon=True)
        self._thread.start()
        ready.wait(5.0)

    def stop(self, timeout_sec: float = 5.0) -> None:
        loop, task, thread = self._loop, self._task, self._thread
        if loop is not None and task is not None and not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)
        if thread is not None:
            thread.join(timeout_sec)
        self._thread = self._loop = self._task = None
