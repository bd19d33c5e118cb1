"""
注文確定コーディネーターのテスト

- 在庫不足・検証エラーは副作用なし
- 並行確定で在庫が負にならない
- 明細保存の失敗は減算ごとロールバック
- 後処理(best-effort)の失敗は確定を失敗させない
"""

import asyncio
import re
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import (
    FailingPublisher,
    count_rows,
    seed_customer,
    seed_product,
    seed_store,
    stock_of,
)
from pos_engine import customers, db, ledger
from pos_engine.checkout.coordinator import CommitRequest, OrderCommitCoordinator
from pos_engine.errors import InsufficientStock, PersistenceError, ValidationError
from pos_engine.inventory import commands as inventory_commands
from pos_engine.inventory import queries as inventory_queries
from pos_engine.orders import commands as order_commands
from pos_engine.orders import queries as order_queries
from pos_engine.orders.aggregate import OrderStatus
from pos_engine.orders.events import OrderCompleted
from pos_engine.pricing import CartLine, PercentDiscount

D = Decimal


def request_for(store_id, *lines, **kwargs) -> CommitRequest:
    kwargs.setdefault("cashier_id", "cashier-1")
    kwargs.setdefault("payment_method", "cash")
    return CommitRequest(store_id=store_id, lines=list(lines), **kwargs)


@pytest.fixture
def coordinator(session_factory, settings, publisher):
    return OrderCommitCoordinator(session_factory, settings, publisher)


# ══════════════════════════════════════════════════════════════
# HAPPY PATH
# ══════════════════════════════════════════════════════════════


async def test_commit_persists_order_lines_and_decrements_stock(coordinator, session_factory):
    store_id = await seed_store(session_factory, tax_rate="0.1")
    product_id = await seed_product(session_factory, store_id, price="10.00", stock=5)

    receipt = await coordinator.commit(
        request_for(store_id, CartLine(product_id, D("10.00"), 2, 5))
    )

    assert re.fullmatch(r"ORD-\d{4}-000001", receipt.order_number)
    assert receipt.breakdown.total == D("22.00")
    assert not receipt.replayed
    assert await stock_of(session_factory, product_id) == 3

    async with session_factory() as session:
        order = await order_queries.get_order(session, receipt.order_id)
    assert order.status == OrderStatus.COMPLETED
    assert order.total == D("22.00")
    assert order.tax_rate == D("0.1")
    assert [(l.product_id, l.quantity, l.line_total) for l in order.lines] == [
        (product_id, 2, D("20.00"))
    ]


async def test_commit_with_discount_keeps_code(coordinator, session_factory):
    store_id = await seed_store(session_factory, tax_rate="0.1")
    product_id = await seed_product(session_factory, store_id, price="10.00", stock=5)

    receipt = await coordinator.commit(
        request_for(
            store_id,
            CartLine(product_id, D("10.00"), 2, 5),
            discount=PercentDiscount(D("10"), "SPRING"),
        )
    )

    assert receipt.breakdown.discount_amount == D("2.00")
    assert receipt.breakdown.total == D("19.80")
    assert receipt.discount_code == "SPRING"


async def test_post_commit_tasks_record_ledger_stats_and_event(
    coordinator, session_factory, publisher
):
    store_id = await seed_store(session_factory, tax_rate="0.1")
    product_id = await seed_product(session_factory, store_id, price="10.00", stock=5)
    customer_id = await seed_customer(session_factory, store_id)

    receipt = await coordinator.commit(
        request_for(store_id, CartLine(product_id, D("10.00"), 2, 5), customer_id=customer_id)
    )

    assert receipt.customer_name == "Sarah Johnson"
    assert [step["status"] for step in receipt.commit_log] == ["COMPLETED"] * 8

    async with session_factory() as session:
        entries = await ledger.list_for_order(session, receipt.order_id)
        customer = await customers.get_customer(session, customer_id)

    assert len(entries) == 1
    assert entries[0].type == ledger.SALE
    assert entries[0].amount == D("22.00")
    assert entries[0].transaction_number.startswith("TXN-")

    assert customer["total_orders"] == 1
    assert customer["total_spent"] == D("22.00")

    assert len(publisher.events) == 1
    event = publisher.events[0]
    assert isinstance(event, OrderCompleted)
    assert event.order_number == receipt.order_number
    assert event.total == D("22.00")


async def test_store_payment_methods_override_defaults(coordinator, session_factory):
    store_id = await seed_store(session_factory, payment_methods="cash, mobile_money")
    product_id = await seed_product(session_factory, store_id, stock=5)

    receipt = await coordinator.commit(
        request_for(store_id, CartLine(product_id, D("10.00"), 1, 5), payment_method="mobile_money")
    )
    assert receipt.payment_method == "mobile_money"

    with pytest.raises(ValidationError) as exc:
        await coordinator.commit(
            request_for(store_id, CartLine(product_id, D("10.00"), 1, 5), payment_method="card")
        )
    assert exc.value.violations == ["unsupported payment method: 'card'"]


# ══════════════════════════════════════════════════════════════
# REJECTIONS (副作用なし)
# ══════════════════════════════════════════════════════════════


async def test_insufficient_stock_has_no_side_effects(coordinator, session_factory, publisher):
    store_id = await seed_store(session_factory)
    product_id = await seed_product(session_factory, store_id, stock=5)

    with pytest.raises(InsufficientStock) as exc:
        await coordinator.commit(request_for(store_id, CartLine(product_id, D("10.00"), 6, 5)))

    assert exc.value.product_id == product_id
    assert exc.value.available == 5
    assert await stock_of(session_factory, product_id) == 5
    assert await count_rows(session_factory, db.orders) == 0
    assert await count_rows(session_factory, db.transactions) == 0
    assert publisher.events == []


async def test_duplicate_product_lines_are_checked_together(coordinator, session_factory):
    store_id = await seed_store(session_factory)
    product_id = await seed_product(session_factory, store_id, stock=5)

    with pytest.raises(InsufficientStock) as exc:
        await coordinator.commit(
            request_for(
                store_id,
                CartLine(product_id, D("10.00"), 3, 5),
                CartLine(product_id, D("10.00"), 3, 5),
            )
        )

    assert exc.value.requested == 6
    assert await stock_of(session_factory, product_id) == 5


async def test_validation_reports_every_violation(coordinator, session_factory):
    store_id = await seed_store(session_factory)
    other_store = await seed_store(session_factory)
    product_id = await seed_product(session_factory, store_id, stock=5)
    foreign_customer = await seed_customer(session_factory, other_store)

    with pytest.raises(ValidationError) as exc:
        await coordinator.commit(
            request_for(
                store_id,
                CartLine(product_id, D("10.00"), 0, 5),
                CartLine("ghost", D("1.00"), 1, 1),
                payment_method="barter",
                customer_id=foreign_customer,
            )
        )

    violations = exc.value.violations
    assert f"quantity for product {product_id} must be at least 1" in violations
    assert "unsupported payment method: 'barter'" in violations
    assert f"customer not found: {foreign_customer}" in violations
    assert "unknown product: ghost" in violations
    assert await count_rows(session_factory, db.orders) == 0


async def test_empty_cart_is_rejected(coordinator, session_factory):
    store_id = await seed_store(session_factory)

    with pytest.raises(ValidationError) as exc:
        await coordinator.commit(request_for(store_id))

    assert exc.value.violations == ["cart is empty"]


async def test_unknown_store_is_rejected(coordinator, session_factory):
    with pytest.raises(ValidationError) as exc:
        await coordinator.commit(request_for("nowhere", CartLine("p", D("1.00"), 1, 1)))

    assert "store not found: nowhere" in exc.value.violations


# ══════════════════════════════════════════════════════════════
# CONCURRENCY / ATOMICITY
# ══════════════════════════════════════════════════════════════


async def test_concurrent_commits_cannot_oversell(coordinator, session_factory):
    store_id = await seed_store(session_factory)
    product_id = await seed_product(session_factory, store_id, stock=5)

    results = await asyncio.gather(
        coordinator.commit(request_for(store_id, CartLine(product_id, D("10.00"), 3, 5))),
        coordinator.commit(request_for(store_id, CartLine(product_id, D("10.00"), 3, 5))),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStock)
    assert failures[0].available == 2
    assert await stock_of(session_factory, product_id) == 2
    assert await count_rows(session_factory, db.orders) == 1


async def test_failed_line_rolls_back_earlier_decrements(
    coordinator, session_factory, monkeypatch
):
    store_id = await seed_store(session_factory)
    first = await seed_product(session_factory, store_id, stock=5, name="First")
    second = await seed_product(session_factory, store_id, stock=1, name="Second")

    real_levels = inventory_queries.get_stock_levels

    async def stale_levels(session, product_ids):
        # カート時点では在庫が十分に見えていた
        levels = await real_levels(session, product_ids)
        levels[second] = {**levels[second], "stock_quantity": 10}
        return levels

    monkeypatch.setattr(inventory_queries, "get_stock_levels", stale_levels)

    with pytest.raises(InsufficientStock) as exc:
        await coordinator.commit(
            request_for(
                store_id,
                CartLine(first, D("10.00"), 2, 5),
                CartLine(second, D("10.00"), 3, 10),
            )
        )

    assert exc.value.product_id == second
    assert exc.value.available == 1
    assert await stock_of(session_factory, first) == 5
    assert await stock_of(session_factory, second) == 1
    assert await count_rows(session_factory, db.orders) == 0


async def test_line_persistence_failure_restores_stock(
    coordinator, session_factory, monkeypatch, publisher
):
    store_id = await seed_store(session_factory)
    product_id = await seed_product(session_factory, store_id, stock=5)

    async def broken_insert(session, order_id, lines, decimals=2):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(order_commands, "insert_order_lines", broken_insert)

    with pytest.raises(PersistenceError):
        await coordinator.commit(request_for(store_id, CartLine(product_id, D("10.00"), 2, 5)))

    assert await stock_of(session_factory, product_id) == 5
    assert await count_rows(session_factory, db.orders) == 0
    assert await count_rows(session_factory, db.order_items) == 0
    assert publisher.events == []


# ══════════════════════════════════════════════════════════════
# BEST-EFFORT 後処理
# ══════════════════════════════════════════════════════════════


async def test_ledger_failure_does_not_fail_commit(
    coordinator, session_factory, monkeypatch, caplog, publisher
):
    store_id = await seed_store(session_factory)
    product_id = await seed_product(session_factory, store_id, stock=5)
    customer_id = await seed_customer(session_factory, store_id)

    async def broken_ledger(session, **kwargs):
        raise SQLAlchemyError("ledger unavailable")

    monkeypatch.setattr(ledger, "record_transaction", broken_ledger)

    receipt = await coordinator.commit(
        request_for(store_id, CartLine(product_id, D("10.00"), 1, 5), customer_id=customer_id)
    )

    statuses = {step["action"]: step["status"] for step in receipt.commit_log}
    assert statuses["RecordLedgerTransaction"] == "FAILED"
    assert statuses["UpdateCustomerStats"] == "COMPLETED"
    assert statuses["PublishOrderCompleted"] == "COMPLETED"
    assert "RecordLedgerTransaction" in caplog.text

    async with session_factory() as session:
        order = await order_queries.get_order(session, receipt.order_id)
        customer = await customers.get_customer(session, customer_id)
    assert order is not None
    assert customer["total_orders"] == 1
    assert await count_rows(session_factory, db.transactions) == 0
    assert len(publisher.events) == 1


async def test_publish_failure_does_not_fail_commit(session_factory, settings):
    coordinator = OrderCommitCoordinator(session_factory, settings, FailingPublisher())
    store_id = await seed_store(session_factory)
    product_id = await seed_product(session_factory, store_id, stock=5)

    receipt = await coordinator.commit(
        request_for(store_id, CartLine(product_id, D("10.00"), 1, 5))
    )

    assert receipt.commit_log[-1]["action"] == "PublishOrderCompleted"
    assert receipt.commit_log[-1]["status"] == "FAILED"
    assert "redis is down" in receipt.commit_log[-1]["error"]
    assert await stock_of(session_factory, product_id) == 4


# ══════════════════════════════════════════════════════════════
# IDEMPOTENT RETRY
# ══════════════════════════════════════════════════════════════


async def test_same_client_reference_returns_existing_order(
    coordinator, session_factory, publisher
):
    store_id = await seed_store(session_factory)
    product_id = await seed_product(session_factory, store_id, stock=5)
    req = request_for(
        store_id, CartLine(product_id, D("10.00"), 2, 5), client_reference="till-7-0042"
    )

    first = await coordinator.commit(req)
    second = await coordinator.commit(req)

    assert second.replayed
    assert second.order_id == first.order_id
    assert second.order_number == first.order_number
    assert second.breakdown.total == first.breakdown.total
    assert await stock_of(session_factory, product_id) == 3
    assert await count_rows(session_factory, db.orders) == 1
    assert len(publisher.events) == 1


async def test_stock_is_decremented_in_product_id_order(
    coordinator, session_factory, monkeypatch
):
    store_id = await seed_store(session_factory)
    first = await seed_product(session_factory, store_id, stock=5, name="First")
    second = await seed_product(session_factory, store_id, stock=5, name="Second")
    low, high = sorted([first, second])

    real_decrement = inventory_commands.commit_decrement
    seen = []

    async def recording_decrement(session, product_id, quantity):
        seen.append(product_id)
        await real_decrement(session, product_id, quantity)

    monkeypatch.setattr(inventory_commands, "commit_decrement", recording_decrement)

    receipt = await coordinator.commit(
        request_for(
            store_id,
            CartLine(high, D("10.00"), 1, 5),
            CartLine(low, D("10.00"), 1, 5),
        )
    )

    assert seen == [low, high]
    # 明細の並びはカートの順のまま
    assert [line.product_id for line in receipt.lines] == [high, low]
    assert receipt.currency == "MWK"
