"""
POS Order Engine — FastAPI エントリーポイント

Command (POST) と Query (GET) のエンドポイントを分離する。

  POST /commands/pricing/breakdown          カート編集ごとの価格計算
  POST /commands/orders                     注文確定
  POST /commands/orders/{order_id}/refund   返金
  GET  /queries/stock/{product_id}          在庫チェック（advisory）
  GET  /queries/products/{product_id}       商品詳細
  GET  /queries/stores/{store_id}/products  商品一覧
  GET  /queries/orders                      注文履歴（検索・status 絞り込み）
  GET  /queries/orders/{order_id}           注文詳細
  GET  /queries/stores/{store_id}/orders/{order_number}
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .checkout.coordinator import CommitRequest, OrderCommitCoordinator, Receipt
from .config import Settings
from .errors import (
    InsufficientStock,
    InvalidState,
    NotFound,
    PersistenceError,
    PosEngineError,
    ValidationError,
)
from .inventory import queries as inventory_queries
from .orders.aggregate import Order
from .orders.history import OrderHistory
from .pricing import (
    CartLine,
    PriceBreakdown,
    compute_breakdown,
    line_violations,
    parse_discount,
    to_decimal,
)
from .publisher import EventPublisher
from .stores import get_store_config

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CartLineIn(BaseModel):
    product_id: str
    unit_price: Decimal
    quantity: int
    available_stock: int = 0


class DiscountIn(BaseModel):
    kind: str = "percent"
    value: str | Decimal | None = None
    code: str | None = None


class BreakdownRequest(BaseModel):
    lines: list[CartLineIn]
    discount: DiscountIn | None = None
    store_id: str | None = None
    tax_rate: Decimal | None = None


class CommitOrderRequest(BaseModel):
    store_id: str
    cashier_id: str
    lines: list[CartLineIn]
    payment_method: str = "cash"
    customer_id: str | None = None
    discount: DiscountIn | None = None
    client_reference: str | None = None


class RefundRequest(BaseModel):
    processed_by: str | None = None


# ── Serialization ────────────────────────────────


def _breakdown_dict(b: PriceBreakdown) -> dict:
    return {
        "subtotal": float(b.subtotal),
        "discount_amount": float(b.discount_amount),
        "taxable_amount": float(b.taxable_amount),
        "tax_rate": float(b.tax_rate),
        "tax_amount": float(b.tax_amount),
        "total": float(b.total),
    }


def _lines_list(lines) -> list[dict]:
    return [
        {
            "product_id": line.product_id,
            "quantity": line.quantity,
            "unit_price": float(line.unit_price),
            "line_total": float(line.line_total),
        }
        for line in lines
    ]


def _receipt_dict(r: Receipt) -> dict:
    return {
        "order_id": r.order_id,
        "order_number": r.order_number,
        "store_id": r.store_id,
        "created_at": r.created_at.isoformat(),
        "lines": _lines_list(r.lines),
        "breakdown": _breakdown_dict(r.breakdown),
        "payment_method": r.payment_method,
        "cashier_id": r.cashier_id,
        "customer_id": r.customer_id,
        "customer_name": r.customer_name,
        "discount_code": r.discount_code,
        "currency": r.currency,
        "replayed": r.replayed,
        "commit_log": r.commit_log,
    }


def _order_dict(o: Order) -> dict:
    return {
        "id": o.id,
        "order_number": o.order_number,
        "store_id": o.store_id,
        "customer_id": o.customer_id,
        "customer_name": o.customer_name,
        "customer_email": o.customer_email,
        "cashier_id": o.cashier_id,
        "subtotal": float(o.subtotal),
        "discount_amount": float(o.discount_amount),
        "discount_code": o.discount_code,
        "tax_amount": float(o.tax_amount),
        "total": float(o.total),
        "currency": o.currency,
        "status": o.status.value,
        "payment_method": o.payment_method,
        "created_at": o.created_at.isoformat() if o.created_at else None,
        "lines": _lines_list(o.lines),
    }


def _to_http(e: PosEngineError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(422, {"violations": e.violations})
    if isinstance(e, InsufficientStock):
        return HTTPException(
            409,
            {
                "reason": str(e),
                "product_id": e.product_id,
                "available": e.available,
                "requested": e.requested,
            },
        )
    if isinstance(e, InvalidState):
        return HTTPException(409, {"reason": str(e), "status": e.status})
    if isinstance(e, NotFound):
        return HTTPException(404, str(e))
    if isinstance(e, PersistenceError):
        return HTTPException(503, str(e))
    return HTTPException(400, str(e))


def _cart_lines(lines: list[CartLineIn]) -> list[CartLine]:
    return [
        CartLine(line.product_id, to_decimal(line.unit_price), line.quantity, line.available_stock)
        for line in lines
    ]


def _discount(d: DiscountIn | None):
    if d is None:
        return None
    return parse_discount(d.kind, d.value, d.code)


# ── Dependencies ─────────────────────────────────


def _sessions(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def _coordinator(request: Request) -> OrderCommitCoordinator:
    state = request.app.state
    return OrderCommitCoordinator(state.session_factory, state.settings, state.publisher)


def _history(request: Request) -> OrderHistory:
    state = request.app.state
    return OrderHistory(state.session_factory, state.settings, state.publisher)


router = APIRouter()


# ── Command Endpoints (Write 側) ─────────────────


@router.post("/commands/pricing/breakdown")
async def cmd_breakdown(req: BreakdownRequest, request: Request):
    """カート編集ごとの価格計算。tax_rate 未指定なら店舗設定を使う"""
    settings: Settings = request.app.state.settings
    lines = _cart_lines(req.lines)
    try:
        violations = line_violations(lines)
        try:
            discount = _discount(req.discount)
        except ValidationError as e:
            violations.extend(e.violations)
        if violations:
            raise ValidationError(violations)
        tax_rate = req.tax_rate
        if tax_rate is None and req.store_id:
            async with _sessions(request)() as session:
                store = await get_store_config(session, req.store_id, settings.payment_methods)
            if store is None:
                raise NotFound("Store", req.store_id)
            tax_rate = store.tax_rate
    except PosEngineError as e:
        raise _to_http(e) from e

    breakdown = compute_breakdown(lines, discount, tax_rate, settings.currency_decimals)
    return _breakdown_dict(breakdown)


@router.post("/commands/orders", status_code=201)
async def cmd_commit_order(req: CommitOrderRequest, request: Request):
    """注文確定コマンド"""
    try:
        receipt = await _coordinator(request).commit(
            CommitRequest(
                store_id=req.store_id,
                cashier_id=req.cashier_id,
                lines=_cart_lines(req.lines),
                payment_method=req.payment_method,
                customer_id=req.customer_id,
                discount=_discount(req.discount),
                client_reference=req.client_reference,
            )
        )
    except PosEngineError as e:
        raise _to_http(e) from e
    return _receipt_dict(receipt)


@router.post("/commands/orders/{order_id}/refund")
async def cmd_refund_order(order_id: str, request: Request, req: RefundRequest | None = None):
    """返金コマンド"""
    try:
        order = await _history(request).refund(order_id, req.processed_by if req else None)
    except PosEngineError as e:
        raise _to_http(e) from e
    return _order_dict(order)


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/queries/stock/{product_id}")
async def query_stock(product_id: str, request: Request, quantity: int = 1):
    """在庫チェック（advisory）。在庫は確保しない"""
    try:
        async with _sessions(request)() as session:
            check = await inventory_queries.reserve(session, product_id, quantity)
    except PosEngineError as e:
        raise _to_http(e) from e
    return {
        "product_id": check.product_id,
        "requested": check.requested,
        "available": check.available,
        "ok": check.ok,
    }


@router.get("/queries/products/{product_id}")
async def query_product(product_id: str, request: Request):
    settings: Settings = request.app.state.settings
    async with _sessions(request)() as session:
        product = await inventory_queries.get_product(
            session, product_id, settings.currency_decimals
        )
    if product is None:
        raise HTTPException(404, "Product not found")
    return {**product, "price": float(product["price"])}


@router.get("/queries/stores/{store_id}/products")
async def query_products(store_id: str, request: Request):
    settings: Settings = request.app.state.settings
    async with _sessions(request)() as session:
        products = await inventory_queries.list_products(
            session, store_id, settings.currency_decimals
        )
    return [{**p, "price": float(p["price"])} for p in products]


@router.get("/queries/orders")
async def query_list_orders(
    store_id: str,
    request: Request,
    search: str | None = None,
    status: str | None = None,
    limit: int = 50,
):
    """注文履歴（新しい順）"""
    if status not in (None, "all", "pending", "completed", "refunded", "cancelled"):
        raise HTTPException(422, {"violations": [f"unknown status: {status!r}"]})
    orders = await _history(request).list_orders(store_id, search, status, limit)
    return [_order_dict(o) for o in orders]


@router.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, request: Request):
    try:
        order = await _history(request).get_order(order_id)
    except PosEngineError as e:
        raise _to_http(e) from e
    return _order_dict(order)


@router.get("/queries/stores/{store_id}/orders/{order_number}")
async def query_get_order_by_number(store_id: str, order_number: str, request: Request):
    """タイムアウト後の再試行前に、採番済みの注文が存在するか確認する"""
    try:
        order = await _history(request).get_order_by_number(store_id, order_number)
    except PosEngineError as e:
        raise _to_http(e) from e
    return _order_dict(order)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "pos-order-engine"}


# ── Application ──────────────────────────────────


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    publisher: EventPublisher | None = None,
) -> FastAPI:
    """
    アプリを組み立てる。

    session_factory / publisher を渡さなければ lifespan で
    DATABASE_URL / REDIS_URL から作る。REDIS_URL が無ければ発行しない。
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        redis_pool: aioredis.Redis | None = None
        if app.state.session_factory is None:
            engine = db.create_engine(settings.database_url)
            await db.init_schema(engine)
            app.state.session_factory = db.create_session_factory(engine)
        if app.state.publisher is None and settings.redis_url:
            redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
            app.state.publisher = EventPublisher(redis_pool)
        logger.info("POS order engine started")
        yield
        if redis_pool is not None:
            await redis_pool.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="POS Order Engine", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.publisher = publisher
    app.include_router(router)
    return app


app = create_app()
