"""
Stock Ledger — コマンドハンドラ (Write 側)

在庫の減算は「読んでから書く」ではなく、条件付き UPDATE 1 文で行う:

    UPDATE products
    SET stock_quantity = stock_quantity - :qty
    WHERE id = :id AND stock_quantity >= :qty

影響行数が 0 なら在庫不足（または商品なし）。同じ商品に対する
同時確定があってもストレージ側で直列化されるので、在庫は負にならない。

トランザクションの commit/rollback は呼び出し側（コーディネーター）が持つ。
複数明細の減算を 1 トランザクションにまとめて all-or-nothing にするため。
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStock, NotFound

logger = logging.getLogger(__name__)


async def commit_decrement(session: AsyncSession, product_id: str, quantity: int) -> None:
    """
    確定時の在庫減算（authoritative）

    カート時点のスナップショットではなく、現在の在庫に対して判定する。
    """
    result = await session.execute(
        text("""
            UPDATE products
            SET stock_quantity = stock_quantity - :qty
            WHERE id = :id AND stock_quantity >= :qty
        """),
        {"qty": quantity, "id": str(product_id)},
    )
    if result.rowcount == 1:
        return

    # 失敗理由を判定するために現在値を読み直す
    current = await session.execute(
        text("SELECT stock_quantity FROM products WHERE id = :id"),
        {"id": str(product_id)},
    )
    row = current.fetchone()
    if not row:
        raise NotFound("Product", product_id)

    logger.info(
        "Stock decrement rejected: product=%s requested=%d available=%d",
        product_id,
        quantity,
        row.stock_quantity,
    )
    raise InsufficientStock(str(product_id), row.stock_quantity, quantity)


async def restock(session: AsyncSession, product_id: str, quantity: int) -> None:
    """在庫を戻す（返金時の restock ポリシー用）"""
    result = await session.execute(
        text("""
            UPDATE products
            SET stock_quantity = stock_quantity + :qty
            WHERE id = :id
        """),
        {"qty": quantity, "id": str(product_id)},
    )
    if result.rowcount != 1:
        raise NotFound("Product", product_id)
