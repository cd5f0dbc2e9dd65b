"""
注文 → 在庫確認 → 保存 → Outbox → イベントバス → 在庫調整 の一連の流れ

両サービスをプロセス内で動かし、イベントはインメモリのバスで受け渡す。
"""

import asyncio

import httpx

from stockflow.eventbus import TOPIC_ORDER_CANCELLED, TOPIC_ORDER_PLACED
from stockflow.metrics import InMemoryMetrics
from stockflow.order import main as order_main
from stockflow.order.availability import AvailabilityClient


def _draft(*items):
    return {
        "orderItems": [
            {"skuCode": sku, "quantity": quantity, "productName": sku, "price": "10.00"}
            for sku, quantity in items
        ]
    }


async def _sync(dispatcher, drain):
    await dispatcher.dispatch_once()
    await drain()


async def test_partial_availability_scenario(
    order_client, seed_stock, stock_of, dispatcher, drain, bus
):
    await seed_stock(IPHONE_15=10, AIRPODS=0)

    response = await order_client.post(
        "/create", json=_draft(("IPHONE_15", 2), ("AIRPODS", 1))
    )
    assert response.status_code == 201
    order_id = response.json()["orderId"]

    order = (await order_client.get(f"/orders/{order_id}")).json()
    assert [(i["skuCode"], i["quantity"]) for i in order["orderItems"]] == [
        ("IPHONE_15", 2)
    ]

    # 在庫はイベントが処理されるまで変わらない
    assert await stock_of("IPHONE_15") == 10

    await _sync(dispatcher, drain)

    placed = bus.messages(TOPIC_ORDER_PLACED)
    assert len(placed) == 1
    assert [i["skuCode"] for i in placed[0]["orderItems"]] == ["IPHONE_15"]
    assert await stock_of("IPHONE_15") == 8
    assert await stock_of("AIRPODS") == 0


async def test_place_and_cancel_restores_stock(
    order_client, seed_stock, stock_of, dispatcher, drain, bus
):
    await seed_stock(IPHONE_15=10, AIRPODS=5)
    order_id = (
        await order_client.post("/create", json=_draft(("IPHONE_15", 3), ("AIRPODS", 1)))
    ).json()["orderId"]
    await _sync(dispatcher, drain)
    assert await stock_of("IPHONE_15") == 7

    await order_client.put(f"/cancel/{order_id}")
    await order_client.put(f"/cancel/{order_id}")
    await _sync(dispatcher, drain)

    assert len(bus.messages(TOPIC_ORDER_CANCELLED)) == 1
    assert await stock_of("IPHONE_15") == 10
    assert await stock_of("AIRPODS") == 5


async def test_redelivered_events_do_not_double_apply(
    order_client, seed_stock, stock_of, dispatcher, drain, bus
):
    await seed_stock(IPHONE_15=10)
    await order_client.post("/create", json=_draft(("IPHONE_15", 2)))
    await _sync(dispatcher, drain)

    # ブローカーが同じイベントをもう一度配信した
    topic, key, payload = bus.published[0]
    await bus.publish(topic, key, payload)
    await drain()

    assert await stock_of("IPHONE_15") == 8


async def test_timeout_creates_nothing(settings, order_db, bus, dispatcher, seed_stock):
    await seed_stock(IPHONE_15=10)

    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    app = order_main.create_app(
        settings,
        session_factory=order_db,
        event_bus=bus,
        availability=AvailabilityClient(
            "http://inventory", transport=httpx.MockTransport(handler)
        ),
        metrics=InMemoryMetrics(),
    )
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://order"
    ) as client:
        response = await client.post("/create", json=_draft(("IPHONE_15", 1)))
        orders = (await client.get("/orders")).json()
    await dispatcher.dispatch_once()

    assert response.status_code == 400
    assert response.json()["detail"] == "No items available for the order."
    assert orders == []
    assert bus.published == []


async def test_concurrent_orders_can_overbook(
    order_client, inventory_client, seed_stock, stock_of, dispatcher, drain
):
    """
    在庫確認は予約をしないので、同じ SKU への同時注文は両方とも受け付けられる。
    2 件目の減算は 0 で下げ止まり、不足分が記録される。
    """
    await seed_stock(IPHONE_15=3)

    first, second = await asyncio.gather(
        order_client.post("/create", json=_draft(("IPHONE_15", 2))),
        order_client.post("/create", json=_draft(("IPHONE_15", 2))),
    )
    assert first.status_code == second.status_code == 201

    await _sync(dispatcher, drain)

    assert await stock_of("IPHONE_15") == 0
    shortfalls = (await inventory_client.get("/api/inventory/shortfalls")).json()
    assert len(shortfalls) == 1
    assert shortfalls[0]["shortfall"] == 1

    # 不足が出た注文をキャンセルしても、実際に減らした分しか戻らない
    short_order = shortfalls[0]["orderId"]
    await order_client.put(f"/cancel/{short_order}")
    await _sync(dispatcher, drain)
    assert await stock_of("IPHONE_15") == 1


async def test_both_events_of_an_order_share_its_partition_key(
    order_client, seed_stock, stock_of, dispatcher, drain, bus
):
    await seed_stock(IPHONE_15=10)
    order_id = (
        await order_client.post("/create", json=_draft(("IPHONE_15", 4)))
    ).json()["orderId"]
    await order_client.put(f"/cancel/{order_id}")

    await _sync(dispatcher, drain)

    keys = {key for _topic, key, _payload in bus.published}
    assert keys == {str(order_id)}
    assert await stock_of("IPHONE_15") == 10
