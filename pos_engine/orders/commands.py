"""
Orders — コマンドハンドラ (Write 側)

注文ヘッダと明細の INSERT、status の遷移。
commit/rollback は呼び出し側のトランザクションに任せる。
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..pricing import CartLine, PriceBreakdown, to_minor_units
from .aggregate import OrderStatus


async def insert_order(
    session: AsyncSession,
    *,
    order_id: str,
    order_number: str,
    store_id: str,
    customer_id: str | None,
    cashier_id: str,
    breakdown: PriceBreakdown,
    discount_code: str | None,
    payment_method: str,
    client_reference: str | None,
    now: datetime,
    decimals: int = 2,
) -> None:
    await session.execute(
        text("""
            INSERT INTO orders
                (id, store_id, order_number, client_reference, customer_id, cashier_id,
                 subtotal_cents, discount_cents, discount_code, tax_rate, tax_cents,
                 total_cents, status, payment_method, created_at, updated_at)
            VALUES
                (:id, :store_id, :order_number, :client_reference, :customer_id, :cashier_id,
                 :subtotal, :discount, :discount_code, :tax_rate, :tax,
                 :total, :status, :payment_method, :now, :now)
        """),
        {
            "id": order_id,
            "store_id": str(store_id),
            "order_number": order_number,
            "client_reference": client_reference,
            "customer_id": customer_id,
            "cashier_id": str(cashier_id),
            "subtotal": to_minor_units(breakdown.subtotal, decimals),
            "discount": to_minor_units(breakdown.discount_amount, decimals),
            "discount_code": discount_code,
            "tax_rate": str(breakdown.tax_rate),
            "tax": to_minor_units(breakdown.tax_amount, decimals),
            "total": to_minor_units(breakdown.total, decimals),
            "status": OrderStatus.COMPLETED.value,
            "payment_method": payment_method,
            "now": now,
        },
    )


async def insert_order_lines(
    session: AsyncSession,
    order_id: str,
    lines: list[CartLine],
    decimals: int = 2,
) -> None:
    """明細はカートの各行と 1:1。line_total = unit_price × quantity"""
    for line in lines:
        await session.execute(
            text("""
                INSERT INTO order_items
                    (id, order_id, product_id, quantity, unit_price_cents, line_total_cents)
                VALUES
                    (:id, :order_id, :product_id, :quantity, :unit_price, :line_total)
            """),
            {
                "id": str(uuid4()),
                "order_id": order_id,
                "product_id": str(line.product_id),
                "quantity": line.quantity,
                "unit_price": to_minor_units(line.unit_price, decimals),
                "line_total": to_minor_units(line.line_total, decimals),
            },
        )


async def transition_status(
    session: AsyncSession,
    order_id: str,
    current: OrderStatus,
    target: OrderStatus,
    now: datetime,
) -> bool:
    """
    status を条件付き UPDATE で遷移させる。

    WHERE status = :current で判定するので、同じ注文への二重返金は
    片方だけが成功する。成功したら True。
    """
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :target, updated_at = :now
            WHERE id = :id AND status = :current
        """),
        {
            "id": str(order_id),
            "current": current.value,
            "target": target.value,
            "now": now,
        },
    )
    return result.rowcount == 1
