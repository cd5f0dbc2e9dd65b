"""
Order Service - FastAPI エントリーポイント

  POST /create        注文作成 (在庫確認 → 在庫のある明細だけ保存 → PLACED イベント)
  PUT  /cancel/{id}   注文キャンセル (CANCELLED イベント)
  GET  /orders        注文一覧
  GET  /orders/{id}   注文詳細

起動時に OutboxDispatcher をバックグラウンドタスクとして開始する。

  uvicorn stockflow.order.main:app --port 8000
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import sessionmaker

from ..config import Settings, load_settings
from ..db import create_schema, make_engine, make_session_factory
from ..errors import NoAvailableItems, NotFound, StockflowError
from ..eventbus import EventBus, InMemoryEventBus, RedisStreamEventBus
from ..logconfig import configure_logging
from ..metrics import InMemoryMetrics
from . import commands, outbox, queries
from .aggregate import OrderItem
from .availability import AvailabilityClient
from .tables import metadata

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItemRequest(_CamelModel):
    sku_code: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    product_name: str = ""
    price: Decimal = Field(ge=0, decimal_places=2)


class CreateOrderRequest(_CamelModel):
    order_items: list[OrderItemRequest] = Field(min_length=1)
    order_date: datetime | None = None


class OrderResponse(_CamelModel):
    order_id: int
    status: str


# ── App ──────────────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker | None = None,
    event_bus: EventBus | None = None,
    availability: commands.AvailabilityOracle | None = None,
    metrics: InMemoryMetrics | None = None,
) -> FastAPI:
    """
    注入されなかった依存は settings から組み立てる。
    テストでは session_factory / event_bus / availability を差し替える。
    """
    settings = settings or load_settings()
    engine = None
    if session_factory is None:
        engine = make_engine(settings.database_url)
        session_factory = make_session_factory(engine)
    if availability is None:
        availability = AvailabilityClient(
            settings.inventory_service_url, timeout=settings.availability_timeout
        )
    metrics = metrics or InMemoryMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        redis_conn = None
        bus = event_bus
        if bus is None:
            if settings.event_bus == "memory":
                bus = InMemoryEventBus(settings.event_partitions)
            else:
                redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
                bus = RedisStreamEventBus(redis_conn, settings.event_partitions)
        if engine is not None:
            await create_schema(engine, metadata)

        dispatcher = outbox.OutboxDispatcher(
            session_factory,
            bus,
            batch_size=settings.outbox_batch_size,
            poll_interval=settings.outbox_poll_interval,
            retry_base=settings.outbox_retry_base,
            retry_max=settings.outbox_retry_max,
        )
        app.state.dispatcher = dispatcher
        shutdown_event = asyncio.Event()
        dispatcher_task = asyncio.create_task(dispatcher.run(shutdown_event))
        yield
        shutdown_event.set()
        dispatcher_task.cancel()
        try:
            await dispatcher_task
        except asyncio.CancelledError:
            pass
        if redis_conn is not None:
            await redis_conn.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.availability = availability
    app.state.metrics = metrics
    app.state.dispatcher = None

    @app.exception_handler(StockflowError)
    async def stockflow_error(request: Request, exc: StockflowError):
        logger.error("Unhandled domain error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # ── Command Endpoints ────────────────────────

    @app.post("/create", status_code=201, response_model=OrderResponse)
    async def create_order(req: CreateOrderRequest):
        draft = [
            OrderItem(
                sku=item.sku_code,
                quantity=item.quantity,
                unit_price=item.price,
                product_name=item.product_name,
            )
            for item in req.order_items
        ]
        async with session_factory() as session:
            try:
                order = await commands.create_order(
                    session,
                    app.state.availability,
                    app.state.metrics,
                    draft,
                    order_date=req.order_date,
                    dispatcher=app.state.dispatcher,
                )
            except NoAvailableItems as e:
                raise HTTPException(status_code=400, detail=str(e))
            except NotFound as e:
                raise HTTPException(
                    status_code=400,
                    detail=f"Product not found with SKU code {e.key}",
                )
        return OrderResponse(order_id=order.id, status=order.status.value)

    @app.put("/cancel/{order_id}", response_model=OrderResponse)
    async def cancel_order(order_id: int):
        async with session_factory() as session:
            try:
                order = await commands.cancel_order(
                    session,
                    app.state.metrics,
                    order_id,
                    dispatcher=app.state.dispatcher,
                )
            except NotFound:
                raise HTTPException(404, f"Order not found with ID: {order_id}")
        return OrderResponse(order_id=order.id, status=order.status.value)

    # ── Query Endpoints ──────────────────────────

    @app.get("/orders")
    async def list_orders():
        async with session_factory() as session:
            return [queries.to_dict(order) for order in await queries.list_orders(session)]

    @app.get("/orders/{order_id}")
    async def get_order(order_id: int):
        async with session_factory() as session:
            order = await queries.load_order(session, order_id)
        if order is None:
            raise HTTPException(404, f"Order not found with ID: {order_id}")
        return queries.to_dict(order)

    @app.get("/outbox")
    async def outbox_status():
        async with session_factory() as session:
            return await outbox.status_counts(session)

    @app.get("/metrics")
    async def get_metrics():
        return app.state.metrics.snapshot()

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app


app = create_app()
