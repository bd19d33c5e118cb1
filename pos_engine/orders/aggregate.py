"""
注文集約 (Order)

注文は確定時に一度だけ作られる。作成後に変わるのは status のみ。

状態遷移:
    PENDING   → COMPLETED / CANCELLED / REFUNDED
    COMPLETED → REFUNDED   (返金)
    COMPLETED → CANCELLED  (返金経路では使わない)
    REFUNDED, CANCELLED は終端
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from ..errors import InvalidState


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED, OrderStatus.CANCELLED}),
    OrderStatus.REFUNDED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class OrderLine:
    order_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass
class Order:
    id: str
    order_number: str
    store_id: str
    customer_id: str | None
    cashier_id: str
    subtotal: Decimal
    discount_amount: Decimal
    discount_code: str | None
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    status: OrderStatus
    payment_method: str
    created_at: datetime
    client_reference: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    currency: str | None = None
    lines: list[OrderLine] = field(default_factory=list)

    def transition(self, target: OrderStatus) -> None:
        if not can_transition(self.status, target):
            raise InvalidState("Order", self.id, self.status.value, target.value)
        self.status = target
