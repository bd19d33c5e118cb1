"""
共通フィクスチャ

テストごとに一時ファイルの SQLite (aiosqlite) を作る。インメモリではなく
ファイルにするのは、並行確定のテストで接続ごとに別トランザクションが必要なため。
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, insert, select

from pos_engine import db
from pos_engine.config import Settings
from pos_engine.pricing import to_minor_units


class StubPublisher:
    """発行されたイベントを記録するだけの publisher"""

    def __init__(self):
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)


class FailingPublisher:
    async def publish(self, event) -> None:
        raise ConnectionError("redis is down")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'pos.db'}")


@pytest.fixture
async def engine(settings):
    engine = db.create_engine(settings.database_url)
    await db.init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db.create_session_factory(engine)


@pytest.fixture
def publisher() -> StubPublisher:
    return StubPublisher()


# ── Seed helpers ─────────────────────────────────


async def seed_store(
    session_factory,
    tax_rate: str = "0.1",
    payment_methods: str | None = None,
) -> str:
    store_id = str(uuid4())
    async with session_factory() as session:
        await session.execute(
            insert(db.stores).values(
                id=store_id,
                name="Test Store",
                tax_rate=tax_rate,
                currency="MWK",
                payment_methods=payment_methods,
            )
        )
        await session.commit()
    return store_id


async def seed_product(
    session_factory,
    store_id: str,
    price: str = "10.00",
    stock: int = 5,
    name: str = "Widget",
) -> str:
    product_id = str(uuid4())
    async with session_factory() as session:
        await session.execute(
            insert(db.products).values(
                id=product_id,
                store_id=store_id,
                name=name,
                sku=name.upper(),
                price_cents=to_minor_units(Decimal(price)),
                stock_quantity=stock,
                is_active=1,
            )
        )
        await session.commit()
    return product_id


async def seed_customer(
    session_factory,
    store_id: str,
    name: str = "Sarah Johnson",
    email: str | None = "sarah@example.com",
) -> str:
    customer_id = str(uuid4())
    async with session_factory() as session:
        await session.execute(
            insert(db.customers).values(
                id=customer_id,
                store_id=store_id,
                name=name,
                email=email,
                total_orders=0,
                total_spent_cents=0,
            )
        )
        await session.commit()
    return customer_id


async def stock_of(session_factory, product_id: str) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(db.products.c.stock_quantity).where(db.products.c.id == product_id)
        )
        return result.scalar_one()


async def count_rows(session_factory, table) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(table))
        return result.scalar_one()
