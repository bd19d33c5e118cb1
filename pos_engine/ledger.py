"""
台帳取引 (LedgerTransaction)

お金の動きを記録する追記専用の監査レコード。注文とは別テーブル。
作成に失敗しても注文はロールバックしない（注文 + 明細から後で再導出できる）。

返金は負の金額の refund 取引として追記する。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import as_datetime
from .pricing import from_minor_units

SALE = "sale"
REFUND = "refund"


@dataclass(frozen=True)
class LedgerTransaction:
    id: str
    transaction_number: str
    type: str
    amount: Decimal
    reference_order_id: str | None
    customer_id: str | None
    processed_by: str | None
    created_at: datetime


async def record_transaction(
    session: AsyncSession,
    *,
    store_id: str,
    transaction_number: str,
    transaction_type: str,
    amount_cents: int,
    payment_method: str | None,
    reference_order_id: str | None,
    customer_id: str | None,
    processed_by: str | None,
    description: str,
) -> str:
    transaction_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO transactions
                (id, store_id, transaction_number, transaction_type, amount_cents,
                 payment_method, reference_order_id, customer_id, processed_by,
                 description, created_at)
            VALUES
                (:id, :store_id, :number, :type, :amount,
                 :payment_method, :order_id, :customer_id, :processed_by,
                 :description, :now)
        """),
        {
            "id": transaction_id,
            "store_id": str(store_id),
            "number": transaction_number,
            "type": transaction_type,
            "amount": amount_cents,
            "payment_method": payment_method,
            "order_id": reference_order_id,
            "customer_id": customer_id,
            "processed_by": processed_by,
            "description": description,
            "now": datetime.now(timezone.utc),
        },
    )
    return transaction_id


async def list_for_order(
    session: AsyncSession, order_id: str, decimals: int = 2
) -> list[LedgerTransaction]:
    result = await session.execute(
        text("""
            SELECT * FROM transactions
            WHERE reference_order_id = :order_id
            ORDER BY created_at ASC
        """),
        {"order_id": str(order_id)},
    )
    return [
        LedgerTransaction(
            id=str(row.id),
            transaction_number=row.transaction_number,
            type=row.transaction_type,
            amount=from_minor_units(row.amount_cents, decimals),
            reference_order_id=row.reference_order_id,
            customer_id=row.customer_id,
            processed_by=row.processed_by,
            created_at=as_datetime(row.created_at),
        )
        for row in result.fetchall()
    ]
