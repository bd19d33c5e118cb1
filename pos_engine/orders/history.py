"""
Order History & Refund Manager

確定済み注文の照会と、status 遷移 completed → refunded。
確定の経路とは独立している。

返金で在庫や顧客集計を戻すかどうかは RefundPolicy で選ぶ。
既定値はどちらも「戻さない」（status を変えるだけ）。
台帳には負の金額の refund 取引を追記する。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import customers, ledger, numbering
from ..config import Settings
from ..errors import InvalidState, NotFound, PersistenceError
from ..inventory import commands as inventory_commands
from ..pricing import to_minor_units
from ..publisher import EventPublisher
from ..tasks import PostCommitTask, run_post_commit_tasks
from . import commands, queries
from .aggregate import Order, OrderStatus, can_transition
from .events import OrderRefunded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundPolicy:
    # 明細の数量を在庫に戻す（返金トランザクション内で実行）
    restock: bool = False
    # 顧客の total_orders / total_spent を戻す（best-effort）
    reverse_customer_stats: bool = False
    # refund 取引を台帳に追記する（best-effort）
    record_ledger: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RefundPolicy":
        return cls(
            restock=settings.refund_restock,
            reverse_customer_stats=settings.refund_reverse_customer_stats,
            record_ledger=settings.refund_record_ledger,
        )


class OrderHistory:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        publisher: EventPublisher | None = None,
        policy: RefundPolicy | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or Settings()
        self.publisher = publisher
        self.policy = policy or RefundPolicy.from_settings(self.settings)

    @property
    def decimals(self) -> int:
        return self.settings.currency_decimals

    # ── Query ────────────────────────────────────

    async def list_orders(
        self,
        store_id: str,
        search_term: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Order]:
        async with self.session_factory() as session:
            return await queries.list_orders(
                session, store_id, search_term, status, limit, self.decimals
            )

    async def get_order(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            order = await queries.get_order(session, order_id, self.decimals)
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def get_order_by_number(self, store_id: str, order_number: str) -> Order:
        """タイムアウト後の再試行前に「既に確定済みか」を確認するために使う。"""
        async with self.session_factory() as session:
            order = await queries.get_order_by_number(
                session, store_id, order_number, self.decimals
            )
        if order is None:
            raise NotFound("Order", order_number)
        return order

    # ── Refund ───────────────────────────────────

    async def refund(self, order_id: str, processed_by: str | None = None) -> Order:
        """
        注文を返金済みにする。

        status の更新は WHERE status = 'completed' の条件付き UPDATE なので、
        同時に 2 回返金されても成功するのは 1 回だけ。
        refunded は終端で、再度の返金は InvalidState。
        """
        now = datetime.now(timezone.utc)

        async with self.session_factory() as session:
            order = await queries.get_order(session, order_id, self.decimals)
            if order is None:
                raise NotFound("Order", order_id)
            if not can_transition(order.status, OrderStatus.REFUNDED):
                raise InvalidState(
                    "Order", order_id, order.status.value, OrderStatus.REFUNDED.value
                )

            try:
                moved = await commands.transition_status(
                    session, order_id, order.status, OrderStatus.REFUNDED, now
                )
                if not moved:
                    # 読んだ後に別のリクエストが status を変えた
                    await session.rollback()
                    raise InvalidState(
                        "Order", order_id, order.status.value, OrderStatus.REFUNDED.value
                    )
                if self.policy.restock:
                    for line in sorted(order.lines, key=lambda l: l.product_id):
                        await inventory_commands.restock(session, line.product_id, line.quantity)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Refund of order %s could not be persisted: %s", order_id, e)
                raise PersistenceError(f"Refund of order {order_id} could not be persisted") from e

        order.transition(OrderStatus.REFUNDED)
        logger.info(
            "Order refunded: %s store=%s total=%s restocked=%s",
            order.order_number,
            order.store_id,
            order.total,
            self.policy.restock,
        )

        refund_log: list[dict] = []
        await run_post_commit_tasks(
            self.post_refund_tasks(order, processed_by, now),
            f"refund of {order.order_number}",
            refund_log,
        )
        return order

    def post_refund_tasks(
        self, order: Order, processed_by: str | None, refunded_at: datetime
    ) -> list[PostCommitTask]:
        total_cents = to_minor_units(order.total, self.decimals)

        async def record_ledger() -> None:
            transaction_number = await numbering.next_transaction_number(
                self.session_factory, order.store_id, self.settings.transaction_prefix
            )
            async with self.session_factory() as session:
                await ledger.record_transaction(
                    session,
                    store_id=order.store_id,
                    transaction_number=transaction_number,
                    transaction_type=ledger.REFUND,
                    amount_cents=-abs(total_cents),
                    payment_method=order.payment_method,
                    reference_order_id=order.id,
                    customer_id=order.customer_id,
                    processed_by=processed_by,
                    description=f"Refund for {order.order_number}",
                )
                await session.commit()

        async def reverse_customer_stats() -> None:
            async with self.session_factory() as session:
                await customers.reverse_stats(session, order.customer_id, total_cents)
                await session.commit()

        async def publish_refunded() -> None:
            await self.publisher.publish(
                OrderRefunded(
                    order_id=order.id,
                    order_number=order.order_number,
                    store_id=order.store_id,
                    total=order.total,
                    restocked=self.policy.restock,
                    timestamp=refunded_at,
                )
            )

        tasks = []
        if self.policy.record_ledger:
            tasks.append(PostCommitTask("RecordRefundTransaction", record_ledger))
        if self.policy.reverse_customer_stats and order.customer_id:
            tasks.append(PostCommitTask("ReverseCustomerStats", reverse_customer_stats))
        if self.publisher is not None:
            tasks.append(PostCommitTask("PublishOrderRefunded", publish_refunded))
        return tasks
