"""Unit tests for the Redis event publisher."""
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.services.event_service import (
    OPPORTUNITY_CREATED,
    EventPublisher,
    RedisEventPublisher,
    SwapEvent,
    get_publisher,
    set_publisher,
)
from tests.fakes import T0


def _event():
    return SwapEvent(
        type=OPPORTUNITY_CREATED,
        user_ids=("U1", "U2", "U3"),
        payload={"opportunity_id": "O1"},
        occurred_at=T0,
    )


class TestRedisEventPublisher:

    @pytest.mark.asyncio
    async def test_publishes_json_on_channel(self):
        redis = AsyncMock()
        redis.publish.return_value = 2
        publisher = RedisEventPublisher(redis, "swapmatch:events")

        await publisher.publish(_event())

        channel, body = redis.publish.await_args.args
        assert channel == "swapmatch:events"
        assert json.loads(body)["payload"] == {"opportunity_id": "O1"}

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        redis = AsyncMock()
        redis.publish.side_effect = RedisConnectionError("down")
        publisher = RedisEventPublisher(redis, "swapmatch:events")

        await publisher.publish_many([_event(), _event()])

        assert redis.publish.await_count == 2


class TestPublisherRegistry:

    def test_set_and_get(self):
        original = get_publisher()
        replacement = RedisEventPublisher(AsyncMock(), "c")
        try:
            set_publisher(replacement)
            assert get_publisher() is replacement
        finally:
            set_publisher(original)

    @pytest.mark.asyncio
    async def test_default_publisher_has_no_transport(self):
        assert await EventPublisher().publish(_event()) is None
