from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stockflow.errors import NoAvailableItems, NotFound
from stockflow.eventbus import TOPIC_ORDER_CANCELLED, TOPIC_ORDER_PLACED
from stockflow.order import commands, queries
from stockflow.order.aggregate import OrderItem, OrderStatus
from stockflow.order.tables import orders, outbox


def _draft():
    return [
        OrderItem("IPHONE_15", 2, Decimal("999.00"), "iPhone 15"),
        OrderItem("AIRPODS", 1, Decimal("199.00"), "AirPods"),
    ]


async def _count(session_factory, table):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(table))).scalar_one()


class TestCreateOrder:
    async def test_persists_only_available_items(
        self, order_db, metrics, static_availability
    ):
        oracle = static_availability({"IPHONE_15": True, "AIRPODS": False})
        async with order_db() as session:
            order = await commands.create_order(session, oracle, metrics, _draft())

        assert oracle.calls == [[("IPHONE_15", 2), ("AIRPODS", 1)]]
        async with order_db() as session:
            stored = await queries.load_order(session, order.id)
        assert [(i.sku, i.quantity) for i in stored.items] == [("IPHONE_15", 2)]
        assert stored.status is OrderStatus.PLACED
        assert stored.total_price == Decimal("1998.00")

    async def test_keeps_draft_order(self, order_db, metrics, static_availability):
        draft = [
            OrderItem("A", 1, Decimal("1")),
            OrderItem("B", 1, Decimal("1")),
            OrderItem("C", 1, Decimal("1")),
        ]
        oracle = static_availability({"A": True, "B": False, "C": True})
        async with order_db() as session:
            order = await commands.create_order(session, oracle, metrics, draft)
        async with order_db() as session:
            stored = await queries.load_order(session, order.id)
        assert [i.sku for i in stored.items] == ["A", "C"]

    async def test_nothing_available_persists_nothing(
        self, order_db, metrics, static_availability
    ):
        oracle = static_availability({"IPHONE_15": False, "AIRPODS": False})
        async with order_db() as session:
            with pytest.raises(NoAvailableItems):
                await commands.create_order(session, oracle, metrics, _draft())

        assert await _count(order_db, orders) == 0
        assert await _count(order_db, outbox) == 0
        assert metrics.counters["orders.rejected"] == 1

    async def test_unreachable_oracle_fails_closed(
        self, order_db, metrics, unreachable, dispatcher, bus
    ):
        async with order_db() as session:
            with pytest.raises(NoAvailableItems):
                await commands.create_order(session, unreachable, metrics, _draft())

        await dispatcher.dispatch_once()
        assert await _count(order_db, orders) == 0
        assert bus.published == []
        assert metrics.counters["availability.unavailable"] == 1

    async def test_unknown_sku_propagates(self, order_db, metrics, static_availability):
        oracle = static_availability(error=NotFound("product", "NOPE"))
        async with order_db() as session:
            with pytest.raises(NotFound):
                await commands.create_order(session, oracle, metrics, _draft())
        assert await _count(order_db, orders) == 0

    async def test_empty_draft_is_rejected(self, order_db, metrics, static_availability):
        oracle = static_availability()
        async with order_db() as session:
            with pytest.raises(ValueError):
                await commands.create_order(session, oracle, metrics, [])
        assert oracle.calls == []

    async def test_one_placed_event_matching_persisted_items(
        self, order_db, metrics, static_availability, dispatcher, bus
    ):
        oracle = static_availability({"IPHONE_15": True, "AIRPODS": False})
        async with order_db() as session:
            order = await commands.create_order(session, oracle, metrics, _draft())

        await dispatcher.dispatch_once()

        events = bus.messages(TOPIC_ORDER_PLACED)
        assert len(events) == 1
        event = events[0]
        assert event["orderId"] == order.id
        assert event["eventId"] == f"{order.id}:PLACED"
        assert event["eventType"] == "PLACED"
        assert [(i["skuCode"], i["quantity"]) for i in event["orderItems"]] == [
            ("IPHONE_15", 2)
        ]
        assert Decimal(event["totalPrice"]) == Decimal("1998.00")
        assert bus.published[0][1] == str(order.id)

    async def test_event_prices_match_persisted_prices(
        self, order_db, metrics, static_availability, dispatcher, bus
    ):
        oracle = static_availability({"CABLE": True})
        draft = [OrderItem("CABLE", 3, Decimal("0.333"), "Cable")]
        async with order_db() as session:
            order = await commands.create_order(session, oracle, metrics, draft)
        await dispatcher.dispatch_once()

        async with order_db() as session:
            stored = await queries.load_order(session, order.id)
        event = bus.messages(TOPIC_ORDER_PLACED)[0]

        assert stored.items[0].unit_price == Decimal("0.33")
        assert stored.total_price == Decimal("0.99")
        assert Decimal(event["orderItems"][0]["price"]) == stored.items[0].unit_price
        assert Decimal(event["totalPrice"]) == stored.total_price

    async def test_records_metrics(self, order_db, metrics, static_availability):
        oracle = static_availability({"IPHONE_15": True, "AIRPODS": True})
        async with order_db() as session:
            await commands.create_order(session, oracle, metrics, _draft())
        assert metrics.counters["orders.placed"] == 1
        assert len(metrics.timings["orders.creation.seconds"]) == 1


class TestCancelOrder:
    async def _place(self, order_db, metrics, static_availability):
        oracle = static_availability({"IPHONE_15": True, "AIRPODS": True})
        async with order_db() as session:
            return await commands.create_order(session, oracle, metrics, _draft())

    async def test_cancel_sets_status(self, order_db, metrics, static_availability):
        order = await self._place(order_db, metrics, static_availability)
        async with order_db() as session:
            cancelled = await commands.cancel_order(session, metrics, order.id)
        assert cancelled.status is OrderStatus.CANCELLED

        async with order_db() as session:
            stored = await queries.load_order(session, order.id)
        assert stored.status is OrderStatus.CANCELLED

    async def test_cancel_event_carries_placed_items(
        self, order_db, metrics, static_availability, dispatcher, bus
    ):
        order = await self._place(order_db, metrics, static_availability)
        async with order_db() as session:
            await commands.cancel_order(session, metrics, order.id)
        await dispatcher.dispatch_once()

        placed = bus.messages(TOPIC_ORDER_PLACED)[0]
        cancelled = bus.messages(TOPIC_ORDER_CANCELLED)[0]
        assert cancelled["eventId"] == f"{order.id}:CANCELLED"
        assert cancelled["orderItems"] == placed["orderItems"]

    async def test_double_cancel_emits_one_event(
        self, order_db, metrics, static_availability, dispatcher, bus
    ):
        order = await self._place(order_db, metrics, static_availability)
        async with order_db() as session:
            await commands.cancel_order(session, metrics, order.id)
        async with order_db() as session:
            again = await commands.cancel_order(session, metrics, order.id)
        await dispatcher.dispatch_once()

        assert again.status is OrderStatus.CANCELLED
        assert len(bus.messages(TOPIC_ORDER_CANCELLED)) == 1
        assert metrics.counters["orders.cancelled"] == 1

    async def test_cancel_unknown_order(self, order_db, metrics):
        async with order_db() as session:
            with pytest.raises(NotFound):
                await commands.cancel_order(session, metrics, 999)
