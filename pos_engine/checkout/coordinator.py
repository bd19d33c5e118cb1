"""
Order Commit Coordinator — 注文確定オーケストレーター

カート + 割引 + 顧客 + 支払い方法 を、注文ヘッダ・明細・在庫減算・
台帳取引・顧客集計 に変換する。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  0. 事前検証（違反はまとめて ValidationError）+ 在庫の事前確認 │
  │  1. 価格計算（店舗の現在の税率）                              │
  │  2. 注文番号の採番（欠番は許容）                              │
  │  ── クリティカル区間: 1 トランザクション ──────────────────── │
  │  3. 各明細の在庫を条件付き UPDATE で減算                      │
  │     └─ 1 件でも失敗 → ロールバック、何も書かれない            │
  │  4. 注文ヘッダを保存 (completed)                              │
  │  5. 注文明細を保存                                            │
  │     └─ 失敗 → ロールバック（3 の減算も戻る）PersistenceError  │
  │  ── 後処理 (best-effort): 失敗してもログのみ ──────────────── │
  │  6. 台帳取引 (sale)                                           │
  │  7. 顧客集計のインクリメント                                  │
  │  8. OrderCompleted を Redis に発行                            │
  │  9. Receipt を返す                                            │
  └──────────────────────────────────────────────────────────────┘

後処理は派生データ。注文 + 明細から再導出できるので、監査ログの書き込み
失敗で会計を失敗させることはしない。在庫減算だけは物理的な制約を守るので
全体をゲートする。
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import customers, ledger, numbering
from ..config import Settings
from ..errors import InsufficientStock, NotFound, PersistenceError, ValidationError
from ..inventory import commands as inventory_commands
from ..inventory import queries as inventory_queries
from ..orders import commands as order_commands
from ..orders import queries as order_queries
from ..orders.aggregate import Order, OrderLine
from ..orders.events import OrderCompleted
from ..pricing import (
    ZERO,
    CartLine,
    Discount,
    PriceBreakdown,
    compute_breakdown,
    line_violations,
    to_minor_units,
)
from ..publisher import EventPublisher
from ..stores import StoreConfig, get_store_config
from ..tasks import PostCommitTask, now_iso, run_post_commit_tasks

logger = logging.getLogger(__name__)


# ── Request / Receipt ───────────────────────────


@dataclass(frozen=True)
class CommitRequest:
    store_id: str
    cashier_id: str
    lines: list[CartLine]
    payment_method: str
    customer_id: str | None = None
    discount: Discount | None = None
    # 呼び出し側が付ける冪等キー。同じ値の再送は既存注文のレシートを返す
    client_reference: str | None = None


@dataclass(frozen=True)
class Receipt:
    order_id: str
    order_number: str
    store_id: str
    created_at: datetime
    lines: list[OrderLine]
    breakdown: PriceBreakdown
    payment_method: str
    cashier_id: str
    customer_id: str | None = None
    customer_name: str | None = None
    discount_code: str | None = None
    currency: str | None = None
    replayed: bool = False
    commit_log: list[dict] = field(default_factory=list)


# ── Coordinator ──────────────────────────────────


class OrderCommitCoordinator:
    """注文確定のオーケストレーター"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        publisher: EventPublisher | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or Settings()
        self.publisher = publisher

    @property
    def decimals(self) -> int:
        return self.settings.currency_decimals

    async def commit(self, request: CommitRequest) -> Receipt:
        """
        注文を確定する。

        ValidationError / InsufficientStock / NotFound は副作用なし。
        PersistenceError はトランザクションがロールバック済みで、
        同じリクエストで安全に再試行できる。
        """
        commit_log: list[dict] = []

        if request.client_reference:
            existing = await self._find_by_reference(request.store_id, request.client_reference)
            if existing:
                logger.info(
                    "Commit replayed: reference=%s order=%s",
                    request.client_reference,
                    existing.order_number,
                )
                return self._receipt_from_order(existing, replayed=True)

        # ── Step 0: 事前検証 ──────────────────────
        try:
            store, customer = await self._validate(request)
        except (ValidationError, InsufficientStock) as e:
            logger.warning("Commit rejected for store %s: %s", request.store_id, e)
            raise

        # ── Step 1: 価格計算 ──────────────────────
        breakdown = compute_breakdown(
            request.lines, request.discount, store.tax_rate, self.decimals
        )
        commit_log.append(
            {"step": 1, "action": "ComputeBreakdown", "status": "COMPLETED", "timestamp": now_iso()}
        )

        # ── Step 2: 採番 ──────────────────────────
        order_number = await numbering.next_order_number(
            self.session_factory, request.store_id, self.settings.order_prefix
        )
        commit_log.append(
            {"step": 2, "action": "NextOrderNumber", "status": "COMPLETED", "timestamp": now_iso()}
        )

        # ── Step 3-5: クリティカル区間 ────────────
        order_id = str(uuid4())
        created_at = datetime.now(timezone.utc)
        commit_log.append(
            {"step": 3, "action": "DecrementStock", "status": "EXECUTING", "timestamp": now_iso()}
        )
        async with self.session_factory() as session:
            try:
                # 商品 ID 順に減算する。並行確定どうしで行ロックの取得順を揃える
                for line in sorted(request.lines, key=lambda l: str(l.product_id)):
                    await inventory_commands.commit_decrement(
                        session, line.product_id, line.quantity
                    )
                commit_log[-1]["status"] = "COMPLETED"

                commit_log.append(
                    {"step": 4, "action": "PersistOrder", "status": "EXECUTING", "timestamp": now_iso()}
                )
                await order_commands.insert_order(
                    session,
                    order_id=order_id,
                    order_number=order_number,
                    store_id=request.store_id,
                    customer_id=request.customer_id,
                    cashier_id=request.cashier_id,
                    breakdown=breakdown,
                    discount_code=request.discount.code if request.discount else None,
                    payment_method=request.payment_method,
                    client_reference=request.client_reference,
                    now=created_at,
                    decimals=self.decimals,
                )
                commit_log[-1]["status"] = "COMPLETED"

                commit_log.append(
                    {"step": 5, "action": "PersistOrderLines", "status": "EXECUTING", "timestamp": now_iso()}
                )
                await order_commands.insert_order_lines(
                    session, order_id, request.lines, self.decimals
                )
                await session.commit()
                commit_log[-1]["status"] = "COMPLETED"
            except (InsufficientStock, NotFound) as e:
                await session.rollback()
                commit_log[-1]["status"] = "FAILED"
                logger.warning("Commit aborted in critical section: %s", e)
                raise
            except IntegrityError as e:
                await session.rollback()
                commit_log[-1]["status"] = "FAILED"
                if request.client_reference:
                    # 同じ冪等キーの並行リクエストに負けた。勝った方の注文を返す
                    existing = await self._find_by_reference(
                        request.store_id, request.client_reference
                    )
                    if existing:
                        return self._receipt_from_order(existing, replayed=True)
                logger.error("Order %s could not be persisted: %s", order_number, e)
                raise PersistenceError(f"Order {order_number} could not be persisted") from e
            except SQLAlchemyError as e:
                await session.rollback()
                commit_log[-1]["status"] = "FAILED"
                logger.error("Order %s could not be persisted: %s", order_number, e)
                raise PersistenceError(f"Order {order_number} could not be persisted") from e

        logger.info(
            "Order committed: %s store=%s total=%s lines=%d",
            order_number,
            request.store_id,
            breakdown.total,
            len(request.lines),
        )

        # ── Step 6-8: 後処理 (best-effort) ───────
        tasks = self.post_commit_tasks(request, order_id, order_number, breakdown, created_at)
        await run_post_commit_tasks(tasks, f"order {order_number}", commit_log, first_step=6)

        return Receipt(
            order_id=order_id,
            order_number=order_number,
            store_id=request.store_id,
            created_at=created_at,
            lines=[
                OrderLine(order_id, line.product_id, line.quantity, line.unit_price, line.line_total)
                for line in request.lines
            ],
            breakdown=breakdown,
            payment_method=request.payment_method,
            cashier_id=request.cashier_id,
            customer_id=request.customer_id,
            customer_name=customer["name"] if customer else None,
            discount_code=request.discount.code if request.discount else None,
            currency=store.currency,
            commit_log=commit_log,
        )

    # ── 事前検証 ─────────────────────────────────

    async def _validate(self, request: CommitRequest) -> tuple[StoreConfig, dict | None]:
        """
        書き込み前の検証。違反は 1 件ずつではなく全部まとめて返す。
        検証を通ったら在庫を事前確認する（確定時の判定は Step 3）。
        """
        violations: list[str] = []

        if not request.lines:
            violations.append("cart is empty")
        violations.extend(line_violations(request.lines))
        if request.discount is not None and request.discount.value < ZERO:
            violations.append("discount value must not be negative")

        async with self.session_factory() as session:
            store = await get_store_config(
                session, request.store_id, self.settings.payment_methods
            )
            if store is None:
                violations.append(f"store not found: {request.store_id}")
            elif request.payment_method not in store.payment_methods:
                violations.append(f"unsupported payment method: {request.payment_method!r}")

            customer = None
            if request.customer_id:
                customer = await customers.get_customer(
                    session, request.customer_id, self.decimals
                )
                if customer is None or customer["store_id"] != str(request.store_id):
                    violations.append(f"customer not found: {request.customer_id}")
                    customer = None

            requested = Counter()
            for line in request.lines:
                requested[str(line.product_id)] += line.quantity
            stock = await inventory_queries.get_stock_levels(session, list(requested))

        for product_id in requested:
            product = stock.get(product_id)
            if (
                product is None
                or product["store_id"] != str(request.store_id)
                or not product["is_active"]
            ):
                violations.append(f"unknown product: {product_id}")

        if violations:
            raise ValidationError(violations)

        # 在庫の事前確認。よくある在庫不足をクリティカル区間に入る前に弾く
        for product_id, quantity in requested.items():
            available = stock[product_id]["stock_quantity"]
            if quantity > available:
                raise InsufficientStock(product_id, available, quantity)

        return store, customer

    # ── 後処理 ───────────────────────────────────

    def post_commit_tasks(
        self,
        request: CommitRequest,
        order_id: str,
        order_number: str,
        breakdown: PriceBreakdown,
        created_at: datetime,
    ) -> list[PostCommitTask]:
        total_cents = to_minor_units(breakdown.total, self.decimals)

        async def record_ledger() -> None:
            transaction_number = await numbering.next_transaction_number(
                self.session_factory, request.store_id, self.settings.transaction_prefix
            )
            async with self.session_factory() as session:
                await ledger.record_transaction(
                    session,
                    store_id=request.store_id,
                    transaction_number=transaction_number,
                    transaction_type=ledger.SALE,
                    amount_cents=total_cents,
                    payment_method=request.payment_method,
                    reference_order_id=order_id,
                    customer_id=request.customer_id,
                    processed_by=request.cashier_id,
                    description=f"Sale {order_number}",
                )
                await session.commit()

        async def update_customer_stats() -> None:
            async with self.session_factory() as session:
                await customers.increment_stats(session, request.customer_id, total_cents)
                await session.commit()

        async def publish_completed() -> None:
            await self.publisher.publish(
                OrderCompleted(
                    order_id=order_id,
                    order_number=order_number,
                    store_id=request.store_id,
                    customer_id=request.customer_id,
                    cashier_id=request.cashier_id,
                    total=breakdown.total,
                    payment_method=request.payment_method,
                    line_count=len(request.lines),
                    timestamp=created_at,
                )
            )

        tasks = [PostCommitTask("RecordLedgerTransaction", record_ledger)]
        if request.customer_id:
            tasks.append(PostCommitTask("UpdateCustomerStats", update_customer_stats))
        if self.publisher is not None:
            tasks.append(PostCommitTask("PublishOrderCompleted", publish_completed))
        return tasks

    # ── 冪等な再送 ───────────────────────────────

    async def _find_by_reference(self, store_id: str, client_reference: str) -> Order | None:
        async with self.session_factory() as session:
            return await order_queries.get_order_by_reference(
                session, store_id, client_reference, self.decimals
            )

    def _receipt_from_order(self, order: Order, replayed: bool = False) -> Receipt:
        return Receipt(
            order_id=order.id,
            order_number=order.order_number,
            store_id=order.store_id,
            created_at=order.created_at,
            lines=list(order.lines),
            breakdown=PriceBreakdown(
                subtotal=order.subtotal,
                discount_amount=order.discount_amount,
                taxable_amount=max(ZERO, order.subtotal - order.discount_amount),
                tax_rate=order.tax_rate,
                tax_amount=order.tax_amount,
                total=order.total,
            ),
            payment_method=order.payment_method,
            cashier_id=order.cashier_id,
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            discount_code=order.discount_code,
            currency=order.currency,
            replayed=replayed,
        )
