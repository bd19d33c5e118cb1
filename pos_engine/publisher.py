"""
イベント発行 — Redis Pub/Sub

注意: Redis Pub/Sub は fire-and-forget。購読側が落ちていれば失われる。
そのため発行は注文確定の後処理(best-effort)として扱う。
"""

import json

import redis.asyncio as aioredis
from pydantic import BaseModel

ORDER_EVENTS_CHANNEL = "order_events"


class EventPublisher:
    def __init__(self, redis: aioredis.Redis, channel: str = ORDER_EVENTS_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        await self.redis.publish(
            self.channel,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
