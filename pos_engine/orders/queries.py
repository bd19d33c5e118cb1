"""
Orders — クエリハンドラ (Read 側)

注文履歴の一覧・検索・詳細。顧客名/メールは customers を LEFT JOIN して返す。
通貨は stores から引く。
"""

from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import as_datetime
from ..pricing import from_minor_units
from .aggregate import Order, OrderLine, OrderStatus

_ORDER_COLUMNS = """
    o.id, o.store_id, o.order_number, o.client_reference, o.customer_id, o.cashier_id,
    o.subtotal_cents, o.discount_cents, o.discount_code, o.tax_rate, o.tax_cents,
    o.total_cents, o.status, o.payment_method, o.created_at,
    c.name AS customer_name, c.email AS customer_email, s.currency
"""


def _row_to_order(row, decimals: int) -> Order:
    return Order(
        id=str(row.id),
        order_number=row.order_number,
        store_id=str(row.store_id),
        customer_id=str(row.customer_id) if row.customer_id else None,
        cashier_id=str(row.cashier_id),
        subtotal=from_minor_units(row.subtotal_cents, decimals),
        discount_amount=from_minor_units(row.discount_cents, decimals),
        discount_code=row.discount_code,
        tax_rate=Decimal(row.tax_rate),
        tax_amount=from_minor_units(row.tax_cents, decimals),
        total=from_minor_units(row.total_cents, decimals),
        status=OrderStatus(row.status),
        payment_method=row.payment_method,
        created_at=as_datetime(row.created_at),
        client_reference=row.client_reference,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        currency=row.currency,
    )


async def _load_lines(session: AsyncSession, order: Order, decimals: int) -> Order:
    result = await session.execute(
        text("""
            SELECT product_id, quantity, unit_price_cents, line_total_cents
            FROM order_items
            WHERE order_id = :order_id
            ORDER BY id
        """),
        {"order_id": order.id},
    )
    order.lines = [
        OrderLine(
            order_id=order.id,
            product_id=str(row.product_id),
            quantity=row.quantity,
            unit_price=from_minor_units(row.unit_price_cents, decimals),
            line_total=from_minor_units(row.line_total_cents, decimals),
        )
        for row in result.fetchall()
    ]
    return order


async def _fetch_one(
    session: AsyncSession, where: str, params: dict, decimals: int
) -> Order | None:
    result = await session.execute(
        text(f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders o
            LEFT JOIN customers c ON c.id = o.customer_id
            LEFT JOIN stores s ON s.id = o.store_id
            WHERE {where}
        """),
        params,
    )
    row = result.fetchone()
    if not row:
        return None
    return await _load_lines(session, _row_to_order(row, decimals), decimals)


async def get_order(session: AsyncSession, order_id: str, decimals: int = 2) -> Order | None:
    return await _fetch_one(session, "o.id = :id", {"id": str(order_id)}, decimals)


async def get_order_by_number(
    session: AsyncSession, store_id: str, order_number: str, decimals: int = 2
) -> Order | None:
    return await _fetch_one(
        session,
        "o.store_id = :store_id AND o.order_number = :number",
        {"store_id": str(store_id), "number": order_number},
        decimals,
    )


async def get_order_by_reference(
    session: AsyncSession, store_id: str, client_reference: str, decimals: int = 2
) -> Order | None:
    return await _fetch_one(
        session,
        "o.store_id = :store_id AND o.client_reference = :reference",
        {"store_id": str(store_id), "reference": client_reference},
        decimals,
    )


async def list_orders(
    session: AsyncSession,
    store_id: str,
    search_term: str | None = None,
    status: str | None = None,
    limit: int = 50,
    decimals: int = 2,
) -> list[Order]:
    """
    注文履歴（新しい順）

    search_term は注文番号・顧客名・顧客メールの部分一致（大文字小文字無視）。
    status が None / "all" なら絞り込まない。明細は含めない。
    """
    clauses = ["o.store_id = :store_id"]
    params: dict = {"store_id": str(store_id), "limit": limit}

    if search_term and search_term.strip():
        clauses.append(
            "(LOWER(o.order_number) LIKE :term"
            " OR LOWER(COALESCE(c.name, '')) LIKE :term"
            " OR LOWER(COALESCE(c.email, '')) LIKE :term)"
        )
        params["term"] = f"%{search_term.strip().lower()}%"

    if status and status != "all":
        clauses.append("o.status = :status")
        params["status"] = OrderStatus(status).value

    result = await session.execute(
        text(f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders o
            LEFT JOIN customers c ON c.id = o.customer_id
            LEFT JOIN stores s ON s.id = o.store_id
            WHERE {" AND ".join(clauses)}
            ORDER BY o.created_at DESC, o.order_number DESC
            LIMIT :limit
        """),
        params,
    )
    return [_row_to_order(row, decimals) for row in result.fetchall()]
