"""
Inventory Service - FastAPI エントリーポイント

  POST /api/products/availability   在庫確認 (Order Service から同期的に呼ばれる)
  POST /api/products                商品登録
  GET  /api/products                商品一覧
  GET  /api/products/{sku}          商品の在庫
  GET  /api/inventory/shortfalls    減算時に不足した記録

起動時にイベントサブスクライバーをバックグラウンドタスクとして開始する。

  ┌──────────────┐  order_placed / order_cancelled  ┌───────────────────┐
  │ Order Service │ ──────── Redis Streams ────────▶ │ Inventory Service │
  └──────────────┘                                   └─────────┬─────────┘
                                                               │
                                                      ┌────────▼────────┐
                                                      │  Inventory DB   │
                                                      └─────────────────┘

  uvicorn stockflow.inventory.main:app --port 8001
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import sessionmaker

from ..config import Settings, load_settings
from ..db import create_schema, make_engine, make_session_factory
from ..errors import AlreadyExists, NotFound
from ..eventbus import EventBus, InMemoryEventBus, RedisStreamEventBus
from ..logconfig import configure_logging
from ..metrics import InMemoryMetrics
from . import commands, queries
from .subscriber import run_subscriber
from .tables import metadata

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProductAvailabilityRequest(_CamelModel):
    sku_code: str
    quantity: int = Field(gt=0)


class ProductAvailability(_CamelModel):
    sku_code: str
    available: bool


class ProductAvailabilityResponse(_CamelModel):
    product_availability_list: list[ProductAvailability]


class CreateProductRequest(_CamelModel):
    sku_code: str = Field(min_length=1)
    product_name: str = ""
    quantity: int = Field(ge=0)
    price: Decimal = Field(ge=0, decimal_places=2)


# ── App ──────────────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker | None = None,
    event_bus: EventBus | None = None,
    metrics: InMemoryMetrics | None = None,
    subscribe: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    engine = None
    if session_factory is None:
        engine = make_engine(settings.database_url)
        session_factory = make_session_factory(engine)
    metrics = metrics or InMemoryMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """起動時にサブスクライバーをバックグラウンドタスクとして開始する。"""
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

        shutdown_event = asyncio.Event()
        subscriber_task = None
        if subscribe:
            subscriber_task = asyncio.create_task(
                run_subscriber(
                    bus,
                    session_factory,
                    metrics,
                    shutdown_event,
                    group=settings.consumer_group,
                    consumer=settings.consumer_name,
                    max_deliveries=settings.max_deliveries,
                    retry_delay=settings.consumer_retry_delay,
                    retry_max=settings.consumer_retry_max,
                )
            )
        yield
        shutdown_event.set()
        if subscriber_task is not None:
            subscriber_task.cancel()
            try:
                await subscriber_task
            except asyncio.CancelledError:
                pass
        if redis_conn is not None:
            await redis_conn.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    app.state.metrics = metrics

    @app.post(
        "/api/products/availability",
        response_model=ProductAvailabilityResponse,
        response_model_by_alias=True,
    )
    async def check_availability(products: list[ProductAvailabilityRequest]):
        """在庫確認。結果はリクエストと同じ順序で返す。"""
        async with session_factory() as session:
            try:
                results = await queries.check_availability(
                    session, [(p.sku_code, p.quantity) for p in products]
                )
            except NotFound as e:
                raise HTTPException(404, f"Product not found with SKU code {e.key}")
        return ProductAvailabilityResponse(
            product_availability_list=[
                ProductAvailability(sku_code=sku, available=available)
                for sku, available in results
            ]
        )

    @app.post("/api/products", status_code=201)
    async def create_product(req: CreateProductRequest):
        async with session_factory() as session:
            try:
                await commands.register_product(
                    session, req.sku_code, req.product_name, req.quantity, req.price
                )
            except AlreadyExists:
                raise HTTPException(
                    409, f"Product already exists with SKU code {req.sku_code}"
                )
            return await queries.get_product(session, req.sku_code)

    @app.get("/api/products")
    async def list_products():
        async with session_factory() as session:
            return await queries.list_products(session)

    @app.get("/api/products/{sku}")
    async def get_product(sku: str):
        async with session_factory() as session:
            product = await queries.get_product(session, sku)
        if not product:
            raise HTTPException(404, f"Product not found with SKU code {sku}")
        return product

    @app.get("/api/inventory/shortfalls")
    async def list_shortfalls():
        async with session_factory() as session:
            return await queries.list_shortfalls(session)

    @app.get("/metrics")
    async def get_metrics():
        return app.state.metrics.snapshot()

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "inventory-service"}

    return app


app = create_app()
