"""
Swapmatch — Event publish hook

The engine announces state changes as discrete events on a Redis pub/sub
channel; delivery to devices (push, websocket fan-out) belongs to whoever
subscribes.  Publishing happens only after the originating transaction has
committed and is best-effort: a failed publish is logged and swallowed so it
can never undo or fail a swipe or a discovery run.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger("swapmatch.event_service")

MATCH_CREATED = "match_created"
OPPORTUNITY_CREATED = "opportunity_created"
OPPORTUNITY_EXPIRED = "opportunity_expired"
OPPORTUNITY_CONVERTED = "opportunity_converted"
OPPORTUNITY_DISMISSED = "opportunity_dismissed"

EVENT_TYPES = frozenset({
    MATCH_CREATED,
    OPPORTUNITY_CREATED,
    OPPORTUNITY_EXPIRED,
    OPPORTUNITY_CONVERTED,
    OPPORTUNITY_DISMISSED,
})


@dataclass(frozen=True)
class SwapEvent:
    type: str
    user_ids: tuple[str, ...]
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "user_ids": list(self.user_ids),
                "payload": self.payload,
                "occurred_at": self.occurred_at.isoformat(),
            },
            default=str,
        )


class EventPublisher:
    """Publisher that only logs; used when no Redis client is available."""

    async def publish(self, event: SwapEvent) -> None:
        logger.info("event_not_published", type=event.type, reason="no_transport")

    async def publish_many(self, events: list[SwapEvent]) -> None:
        for event in events:
            await self.publish(event)


class RedisEventPublisher(EventPublisher):
    """Publishes events as JSON on a single Redis channel."""

    def __init__(self, redis_client, channel: str) -> None:
        self._redis = redis_client
        self.channel = channel

    async def publish(self, event: SwapEvent) -> None:
        try:
            receivers = await self._redis.publish(self.channel, event.to_json())
        except Exception as exc:
            logger.warning(
                "event_publish_failed",
                type=event.type,
                channel=self.channel,
                error=str(exc),
            )
            return
        logger.debug("event_published", type=event.type, receivers=receivers)


# ── Module-level publisher (set by the app lifespan) ──────────────────────────

_publisher: EventPublisher = EventPublisher()


def set_publisher(publisher: EventPublisher) -> None:
    global _publisher
    _publisher = publisher


def get_publisher() -> EventPublisher:
    return _publisher
