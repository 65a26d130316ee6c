"""
Event Publisher - real-time status events to connected clients

Engines receive a publisher instance; they never reach for a process-wide
socket registry. Events are published after the database commit and a
publishing failure is logged, never raised: the money movement already
happened and must not be rolled back by a notification problem.

Events:
- payment:status:updated
- payout:status:updated
- payout:transfer:completed
- payout:transfer:failed
"""
import enum
import json
from datetime import datetime, timezone
from typing import Any, Protocol

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)

_CHANNEL_PREFIX = "user"


class EventName(str, enum.Enum):
    PAYMENT_STATUS_UPDATED = "payment:status:updated"
    PAYOUT_STATUS_UPDATED = "payout:status:updated"
    PAYOUT_TRANSFER_COMPLETED = "payout:transfer:completed"
    PAYOUT_TRANSFER_FAILED = "payout:transfer:failed"


def channel_name(user_id: int) -> str:
    return f"{_CHANNEL_PREFIX}:{user_id}"


class EventPublisher(Protocol):
    async def publish(self, user_id: int, event: str, payload: dict[str, Any]) -> None:
        ...


def _message(user_id: int, event: str, payload: dict[str, Any]) -> str:
    return json.dumps(
        {
            "event": event,
            "user_id": user_id,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )


class LoggingEventPublisher:
    """Default publisher: writes the event to the structured log only."""

    async def publish(self, user_id: int, event: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Event published",
            extra_data={"user_id": user_id, "event": event, "payload": payload},
        )


class RedisEventPublisher:
    """Redis Pub/Sub on channel ``user:{id}``; the socket gateway fans it out."""

    async def publish(self, user_id: int, event: str, payload: dict[str, Any]) -> None:
        try:
            redis = await get_redis()
            await redis.publish(channel_name(user_id), _message(user_id, event, payload))
            logger.info(
                "Event published",
                extra_data={"user_id": user_id, "event": event},
            )
        except Exception as e:
            logger.error(
                "Failed to publish event",
                extra_data={"user_id": user_id, "event": event, "error": str(e)},
                exc_info=True,
            )


class RecordingEventPublisher:
    """Keeps published events in memory (tests, dry runs)."""

    def __init__(self) -> None:
        self.events: list[tuple[int, str, dict[str, Any]]] = []

    async def publish(self, user_id: int, event: str, payload: dict[str, Any]) -> None:
        self.events.append((user_id, event, payload))

    def named(self, event: str) -> list[tuple[int, str, dict[str, Any]]]:
        return [item for item in self.events if item[1] == event]


async def publish_safely(
    publisher: EventPublisher,
    user_id: int | None,
    event: EventName,
    payload: dict[str, Any],
) -> None:
    """Publish and swallow failures; callers run this after commit."""
    if user_id is None:
        return
    try:
        await publisher.publish(user_id, event.value, payload)
    except Exception as e:
        logger.error(
            "Event publisher raised",
            extra_data={"user_id": user_id, "event": event.value, "error": str(e)},
            exc_info=True,
        )


def get_event_publisher() -> EventPublisher:
    """Publisher selected by EVENT_PUBLISHER; also a FastAPI dependency."""
    if settings.EVENT_PUBLISHER == "redis":
        return RedisEventPublisher()
    return LoggingEventPublisher()
