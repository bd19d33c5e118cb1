"""
注文イベント定義

確定・返金の後に order_events チャネルへ通知する事実。
過去形で命名し、不変として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderCompleted(BaseModel):
    """注文が確定された"""
    order_id: str
    order_number: str
    store_id: str
    customer_id: str | None = None
    cashier_id: str
    total: Decimal
    payment_method: str
    line_count: int
    timestamp: datetime


class OrderRefunded(BaseModel):
    """注文が返金された"""
    order_id: str
    order_number: str
    store_id: str
    total: Decimal
    restocked: bool
    timestamp: datetime
