from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

import pytest
from redis.asyncio import Redis

from core.bus import Bus

F = TypeVar("F", bound=Callable[..., None])


def typed(x: F) -> F:
    return x


REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")


async def _require_redis() -> None:
    if os.getenv("REDIS_SKIP") == "1":
        pytest.skip("redis tests disabled")
    client = Redis.from_url(REDIS_URL)
    try:
        await asyncio.wait_for(client.ping(), timeout=1)
    except Exception as exc:  # pragma: no cover - depends on local redis
        pytest.skip(f"redis not available: {exc}")
    finally:
        await client.aclose()


@typed(pytest.mark.asyncio)
async def test_command_round_trip_skips_non_object_payloads() -> None:
    await _require_redis()

    bus = Bus(REDIS_URL)
    raw = Redis.from_url(REDIS_URL)
    topic = f"test.profiler.commands.{uuid.uuid4().hex}"
    received: list[dict[str, Any]] = []

    async def consume_one() -> None:
        async for item in bus.subscribe(topic):
            received.append(item)
            break

    task = asyncio.create_task(consume_one())
    try:
        await asyncio.sleep(0.05)
        await raw.publish(topic, "not json")
        await raw.publish(topic, "[1, 2]")
        await bus.publish_json(topic, {"command": "start", "duration": 5})

        await asyncio.wait_for(task, timeout=5)
    finally:
        await raw.aclose()

    assert received == [{"command": "start", "duration": 5}]

    await bus.close()
    await bus.close()
