"""
Checkout Service — Redis Pub/Sub パブリッシャー

状態変更がコミットされた後にだけイベントを発行する。
Redis Pub/Sub は fire-and-forget のため、発行失敗はログに残すだけで
コミット済みの台帳は巻き戻さない。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ORDER_EVENTS = "order_events"
INVENTORY_EVENTS = "inventory_events"
SAGA_EVENTS = "saga_events"


class EventPublisher:
    def __init__(self, redis: aioredis.Redis | None) -> None:
        self.redis = redis

    async def publish(self, channel: str, event: BaseModel) -> None:
        await self.publish_raw(
            channel, type(event).__name__, event.model_dump(mode="json")
        )

    async def publish_raw(self, channel: str, event_type: str, data: dict) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                channel,
                json.dumps({"event_type": event_type, "data": data}, default=str),
            )
        except RedisError:
            logger.exception("Failed to publish %s to %s", event_type, channel)
