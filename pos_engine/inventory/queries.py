"""
Stock Ledger — クエリハンドラ (Read 側)

ここでの在庫数は「その時点の目安」。カート構築中の UX 用で、
確保(hold)はしない。確定時の判定は commands.commit_decrement が行う。
"""

from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from ..pricing import from_minor_units


@dataclass(frozen=True)
class StockCheck:
    product_id: str
    requested: int
    available: int

    @property
    def ok(self) -> bool:
        return self.requested <= self.available


def _product_dict(row, decimals: int) -> dict:
    return {
        "id": str(row.id),
        "store_id": str(row.store_id),
        "name": row.name,
        "sku": row.sku,
        "price": from_minor_units(row.price_cents, decimals),
        "stock_quantity": row.stock_quantity,
        "is_active": bool(row.is_active),
    }


async def get_product(session: AsyncSession, product_id: str, decimals: int = 2) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id"),
        {"id": str(product_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return _product_dict(row, decimals)


async def get_stock_levels(session: AsyncSession, product_ids: list[str]) -> dict[str, dict]:
    """複数商品の在庫を一度に取得する（store_id も返す）。"""
    if not product_ids:
        return {}
    params = {f"id{i}": str(pid) for i, pid in enumerate(product_ids)}
    placeholders = ", ".join(f":{key}" for key in params)
    result = await session.execute(
        text(
            "SELECT id, store_id, stock_quantity, is_active FROM products "
            f"WHERE id IN ({placeholders})"
        ),
        params,
    )
    return {
        str(row.id): {
            "store_id": str(row.store_id),
            "stock_quantity": row.stock_quantity,
            "is_active": bool(row.is_active),
        }
        for row in result.fetchall()
    }


async def list_products(session: AsyncSession, store_id: str, decimals: int = 2) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM products
            WHERE store_id = :store_id AND is_active = 1
            ORDER BY name
        """),
        {"store_id": str(store_id)},
    )
    return [_product_dict(row, decimals) for row in result.fetchall()]


async def reserve(session: AsyncSession, product_id: str, requested: int) -> StockCheck:
    """
    在庫チェック（advisory）

    カートに追加する時点の確認。読み取りのみで、在庫は確保しない。
    """
    result = await session.execute(
        text("SELECT stock_quantity FROM products WHERE id = :id"),
        {"id": str(product_id)},
    )
    row = result.fetchone()
    if not row:
        raise NotFound("Product", product_id)
    return StockCheck(str(product_id), requested, row.stock_quantity)
