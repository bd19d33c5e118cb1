import json
from datetime import datetime, timezone
from decimal import Decimal

from pos_engine.orders.events import OrderRefunded
from pos_engine.publisher import ORDER_EVENTS_CHANNEL, EventPublisher


class StubRedis:
    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


async def test_publish_wraps_event_type_and_data():
    redis = StubRedis()
    publisher = EventPublisher(redis)

    await publisher.publish(
        OrderRefunded(
            order_id="o-1",
            order_number="ORD-2026-000001",
            store_id="s-1",
            total=Decimal("22.00"),
            restocked=False,
            timestamp=datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc),
        )
    )

    channel, message = redis.published[0]
    payload = json.loads(message)
    assert channel == ORDER_EVENTS_CHANNEL
    assert payload["event_type"] == "OrderRefunded"
    assert payload["data"]["order_number"] == "ORD-2026-000001"
    assert Decimal(payload["data"]["total"]) == Decimal("22.00")
