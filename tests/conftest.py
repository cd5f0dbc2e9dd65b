from decimal import Decimal

import httpx
import pytest

from stockflow.config import Settings
from stockflow.db import create_schema, make_engine, make_session_factory
from stockflow.errors import Unavailable
from stockflow.eventbus import InMemoryEventBus
from stockflow.inventory import main as inventory_main
from stockflow.inventory import store
from stockflow.inventory.subscriber import make_consumer
from stockflow.inventory.tables import metadata as inventory_metadata
from stockflow.metrics import InMemoryMetrics
from stockflow.order import main as order_main
from stockflow.order.availability import AvailabilityClient
from stockflow.order.outbox import OutboxDispatcher
from stockflow.order.tables import metadata as order_metadata


@pytest.fixture()
def settings():
    return Settings(event_bus="memory", event_partitions=2)


@pytest.fixture()
async def order_db(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await create_schema(engine, order_metadata)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
async def inventory_db(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await create_schema(engine, inventory_metadata)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
def bus():
    return InMemoryEventBus(partitions=2)


@pytest.fixture()
def metrics():
    return InMemoryMetrics()


@pytest.fixture()
def seed_stock(inventory_db):
    async def seed(**quantities: int) -> None:
        async with inventory_db() as session:
            for sku, quantity in quantities.items():
                await store.register_stock(
                    session, sku, sku.replace("_", " ").title(), quantity, Decimal("10")
                )
            await session.commit()

    return seed


@pytest.fixture()
def stock_of(inventory_db):
    async def stock(sku: str) -> int:
        async with inventory_db() as session:
            return await store.get_quantity(session, sku)

    return stock


@pytest.fixture()
def inventory_app(settings, inventory_db, bus, metrics):
    return inventory_main.create_app(
        settings,
        session_factory=inventory_db,
        event_bus=bus,
        metrics=metrics,
        subscribe=False,
    )


@pytest.fixture()
def availability(inventory_app):
    """実際の Inventory Service アプリをプロセス内で呼ぶ在庫確認クライアント"""
    return AvailabilityClient(
        "http://inventory", transport=httpx.ASGITransport(app=inventory_app)
    )


@pytest.fixture()
def order_app(settings, order_db, bus, availability):
    return order_main.create_app(
        settings,
        session_factory=order_db,
        event_bus=bus,
        availability=availability,
        metrics=InMemoryMetrics(),
    )


@pytest.fixture()
async def order_client(order_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=order_app), base_url="http://order"
    ) as client:
        yield client


@pytest.fixture()
async def inventory_client(inventory_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=inventory_app), base_url="http://inventory"
    ) as client:
        yield client


@pytest.fixture()
def dispatcher(order_db, bus):
    return OutboxDispatcher(order_db, bus, retry_base=0.0)


@pytest.fixture()
def consumer(bus, inventory_db, metrics):
    return make_consumer(
        bus,
        inventory_db,
        metrics,
        consumer="inventory-test",
        max_deliveries=3,
        retry_delay=0,
        block_ms=5,
    )


@pytest.fixture()
def drain(consumer):
    """全パーティションの配信済み・未配信メッセージを処理し切る"""

    async def run() -> int:
        processed = 0
        for stream in consumer.streams:
            await consumer.bus.ensure_group(stream, consumer.group)
        progress = True
        while progress:
            progress = False
            for stream in consumer.streams:
                while await consumer.poll_once(stream):
                    processed += 1
                    progress = True
        return processed

    return run


class StaticAvailability:
    """固定の在庫確認結果を返すテスト用オラクル"""

    def __init__(self, available: dict[str, bool] | None = None, error=None):
        self.available = available or {}
        self.error = error
        self.calls: list[list[tuple[str, int]]] = []

    async def check_availability(self, items):
        self.calls.append(list(items))
        if self.error is not None:
            raise self.error
        return [(sku, self.available.get(sku, False)) for sku, _quantity in items]


@pytest.fixture()
def static_availability():
    return StaticAvailability


@pytest.fixture()
def unreachable():
    return StaticAvailability(error=Unavailable("inventory-service", "ReadTimeout"))
