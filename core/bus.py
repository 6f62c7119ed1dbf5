from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Protocol, cast

from redis.asyncio import Redis


class BusProto(Protocol):
    """Pub/sub protocol used by the control-channel trigger."""

    async def publish_json(self, topic: str, payload: dict[str, Any]) -> None:
        """Publish a JSON-serializable payload to ``topic``."""
        ...

    def subscribe(self, topic: str) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded messages from ``topic``.

        Note:
            A sync method returning an AsyncIterator: ``async for msg in bus.subscribe(t)``.
        """
        ...

    async def close(self) -> None:
        """Release the underlying connection."""
        ...


class Bus:
    """Redis pub/sub bus carrying JSON messages."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Redis | None = None

    def _get_client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self._url, encoding="utf-8", decode_responses=True)
        return self._client

    async def publish_json(self, topic: str, payload: dict[str, Any]) -> None:
        data = json.dumps(payload, separators=(",", ":"))
        await self._get_client().publish(topic, data)

    def subscribe(self, topic: str) -> AsyncIterator[dict[str, Any]]:
        async def stream() -> AsyncIterator[dict[str, Any]]:
            pubsub = cast(Any, self._get_client().pubsub())
            await pubsub.subscribe(topic)
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    data = message.get("data")
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    try:
                        payload = json.loads(data)
                    except (TypeError, ValueError):
                        continue
                    if isinstance(payload, dict):
                        yield payload
            finally:
                await pubsub.unsubscribe(topic)
                await pubsub.aclose()

        return stream()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
