"""
顧客集計 (CustomerAggregate)

total_orders / total_spent は注文確定の後処理(best-effort)で更新する。
読んでから書くのではなく、SQL 側でインクリメントする。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .pricing import from_minor_units


async def get_customer(session: AsyncSession, customer_id: str, decimals: int = 2) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM customers WHERE id = :id"),
        {"id": str(customer_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": str(row.id),
        "store_id": str(row.store_id),
        "name": row.name,
        "email": row.email,
        "phone": row.phone,
        "total_orders": row.total_orders,
        "total_spent": from_minor_units(row.total_spent_cents, decimals),
    }


async def increment_stats(session: AsyncSession, customer_id: str, amount_cents: int) -> None:
    await session.execute(
        text("""
            UPDATE customers
            SET total_orders = total_orders + 1,
                total_spent_cents = total_spent_cents + :amount
            WHERE id = :id
        """),
        {"id": str(customer_id), "amount": amount_cents},
    )


async def reverse_stats(session: AsyncSession, customer_id: str, amount_cents: int) -> None:
    """返金時の集計戻し（RefundPolicy.reverse_customer_stats が有効な場合）"""
    await session.execute(
        text("""
            UPDATE customers
            SET total_orders = CASE WHEN total_orders > 0 THEN total_orders - 1 ELSE 0 END,
                total_spent_cents = CASE
                    WHEN total_spent_cents >= :amount THEN total_spent_cents - :amount
                    ELSE 0
                END
            WHERE id = :id
        """),
        {"id": str(customer_id), "amount": amount_cents},
    )
