"""
採番 (Order Numbering)

店舗ごと・系列ごとのカウンタをストレージ側で原子的にインクリメントする。

    INSERT ... ON CONFLICT DO UPDATE SET last_value = last_value + 1 RETURNING

番号は独立した短いトランザクションで払い出す。注文確定が途中で
失敗した番号は捨てられる（欠番は許容）。

  注文番号:      ORD-2026-000001
  取引番号:      TXN-2026-000001
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

ORDER_SEQUENCE = "order"
TRANSACTION_SEQUENCE = "transaction"


async def next_value(session: AsyncSession, store_id: str, sequence: str) -> int:
    result = await session.execute(
        text("""
            INSERT INTO number_sequences (store_id, name, last_value)
            VALUES (:store_id, :name, 1)
            ON CONFLICT (store_id, name) DO UPDATE
                SET last_value = number_sequences.last_value + 1
            RETURNING last_value
        """),
        {"store_id": str(store_id), "name": sequence},
    )
    return result.scalar_one()


def format_number(prefix: str, value: int, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{prefix}-{now.year}-{value:06d}"


async def _issue(
    session_factory: async_sessionmaker,
    store_id: str,
    sequence: str,
    prefix: str,
) -> str:
    async with session_factory() as session:
        value = await next_value(session, store_id, sequence)
        await session.commit()
    return format_number(prefix, value)


async def next_order_number(
    session_factory: async_sessionmaker, store_id: str, prefix: str = "ORD"
) -> str:
    return await _issue(session_factory, store_id, ORDER_SEQUENCE, prefix)


async def next_transaction_number(
    session_factory: async_sessionmaker, store_id: str, prefix: str = "TXN"
) -> str:
    return await _issue(session_factory, store_id, TRANSACTION_SEQUENCE, prefix)
