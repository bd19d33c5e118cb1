"""
店舗設定の読み取り（税率・通貨・支払い方法）

店舗の CRUD 自体はこのエンジンの外側。ここでは確定時に必要な値だけ読む。
"""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .pricing import to_decimal


@dataclass(frozen=True)
class StoreConfig:
    store_id: str
    name: str
    tax_rate: Decimal
    currency: str
    payment_methods: tuple[str, ...]


async def get_store_config(
    session: AsyncSession,
    store_id: str,
    default_payment_methods: tuple[str, ...],
) -> StoreConfig | None:
    result = await session.execute(
        text("SELECT id, name, tax_rate, currency, payment_methods FROM stores WHERE id = :id"),
        {"id": str(store_id)},
    )
    row = result.fetchone()
    if not row:
        return None

    methods = default_payment_methods
    if row.payment_methods:
        methods = tuple(m.strip() for m in row.payment_methods.split(",") if m.strip())

    return StoreConfig(
        store_id=str(row.id),
        name=row.name,
        tax_rate=to_decimal(row.tax_rate or 0),
        currency=row.currency,
        payment_methods=methods,
    )
