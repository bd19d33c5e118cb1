"""
データベース — スキーマ定義とセッションファクトリ

クエリ/コマンドは text() の生 SQL で書く。スキーマだけは
SQLAlchemy Core の Table で宣言し、起動時に create_all する。

金額はすべて通貨の最小単位の整数(*_cents)で保存する。税率は Decimal の文字列表現。
PostgreSQL と SQLite の両方で同じ SQL が動く。
"""

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

metadata = MetaData()

stores = Table(
    "stores",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("tax_rate", String(20), nullable=False, default="0"),
    Column("currency", String(3), nullable=False, default="MWK"),
    # カンマ区切り。NULL なら設定値 POS_PAYMENT_METHODS を使う
    Column("payment_methods", Text, nullable=True),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("store_id", String(36), ForeignKey("stores.id"), nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("sku", String(64), nullable=True),
    Column("price_cents", Integer, nullable=False),
    Column("stock_quantity", Integer, nullable=False, default=0),
    Column("is_active", Integer, nullable=False, default=1),
)

customers = Table(
    "customers",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("store_id", String(36), ForeignKey("stores.id"), nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("email", String(200), nullable=True),
    Column("phone", String(50), nullable=True),
    Column("total_orders", Integer, nullable=False, default=0),
    Column("total_spent_cents", Integer, nullable=False, default=0),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("store_id", String(36), ForeignKey("stores.id"), nullable=False, index=True),
    Column("order_number", String(40), nullable=False),
    Column("client_reference", String(100), nullable=True),
    Column("customer_id", String(36), ForeignKey("customers.id"), nullable=True),
    Column("cashier_id", String(36), nullable=False),
    Column("subtotal_cents", Integer, nullable=False),
    Column("discount_cents", Integer, nullable=False, default=0),
    Column("discount_code", String(64), nullable=True),
    Column("tax_rate", String(20), nullable=False, default="0"),
    Column("tax_cents", Integer, nullable=False, default=0),
    Column("total_cents", Integer, nullable=False),
    Column("status", String(20), nullable=False, default="completed"),
    Column("payment_method", String(40), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("store_id", "order_number", name="uq_orders_store_number"),
    UniqueConstraint("store_id", "client_reference", name="uq_orders_store_reference"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price_cents", Integer, nullable=False),
    Column("line_total_cents", Integer, nullable=False),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("store_id", String(36), ForeignKey("stores.id"), nullable=False, index=True),
    Column("transaction_number", String(40), nullable=False),
    Column("transaction_type", String(20), nullable=False),
    Column("amount_cents", Integer, nullable=False),
    Column("payment_method", String(40), nullable=True),
    Column("reference_order_id", String(36), ForeignKey("orders.id"), nullable=True),
    Column("customer_id", String(36), nullable=True),
    Column("processed_by", String(36), nullable=True),
    Column("description", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("store_id", "transaction_number", name="uq_transactions_store_number"),
)

number_sequences = Table(
    "number_sequences",
    metadata,
    Column("store_id", String(36), primary_key=True),
    Column("name", String(20), primary_key=True),
    Column("last_value", Integer, nullable=False),
)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def as_datetime(value) -> datetime | None:
    """SQLite は日時を文字列で返すので datetime に揃える。"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
