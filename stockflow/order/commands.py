"""
Order Service - コマンドハンドラ (Write 側)

注文作成フロー:
  1. 全明細の (sku, quantity) を 1 回の在庫確認にまとめる
  2. available = true の明細だけ残す
  3. 1 つも残らなければ NoAvailableItems (保存もイベントもなし)
  4. 注文 + 明細 + PLACED イベント (outbox) を 1 トランザクションで保存
  5. 保存済みの注文を返す。イベント送信は OutboxDispatcher がバックグラウンドで行う

在庫確認と実際の在庫減算 (非同期) の間には時間差があり、同じ SKU への
同時注文は両方とも受け付けられることがある (オーバーブッキング)。
これは結果整合性の許容範囲で、減算時の不足は在庫サービス側で検知・記録される。
"""

import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NoAvailableItems, NotFound, Unavailable
from ..metrics import MetricsRecorder, timed
from . import outbox, queries
from .aggregate import Order, OrderItem, OrderStatus
from .events import build_event
from .tables import order_items, orders

logger = logging.getLogger(__name__)


class AvailabilityOracle(Protocol):
    async def check_availability(
        self, items: list[tuple[str, int]]
    ) -> list[tuple[str, bool]]: ...


async def create_order(
    session: AsyncSession,
    availability: AvailabilityOracle,
    metrics: MetricsRecorder,
    draft: list[OrderItem],
    order_date: datetime | None = None,
    dispatcher: outbox.OutboxDispatcher | None = None,
) -> Order:
    """注文作成コマンド"""
    if not draft:
        raise ValueError("an order draft needs at least one item")

    with timed(metrics, "orders.creation.seconds"):
        results = await _check(availability, metrics, draft)
        kept = [item for item, (_sku, available) in zip(draft, results) if available]

        if not kept:
            metrics.increment("orders.rejected")
            logger.info(
                "Rejected order: none of %s available", [item.sku for item in draft]
            )
            raise NoAvailableItems()

        now = datetime.now(timezone.utc)
        order = Order(id=None, items=kept, order_date=order_date or now)

        result = await session.execute(
            insert(orders).values(
                total_price=order.total_price,
                order_date=order.order_date,
                status=order.status.value,
                updated_at=now,
            )
        )
        order.id = result.inserted_primary_key[0]

        await session.execute(
            insert(order_items),
            [
                {
                    "order_id": order.id,
                    "position": position,
                    "sku": item.sku,
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                }
                for position, item in enumerate(order.items)
            ],
        )

        # 注文と同じトランザクションでイベントを書く
        await outbox.append(session, build_event(order, OrderStatus.PLACED))
        await session.commit()

    metrics.increment("orders.placed")
    logger.info(
        "Order %s placed with %d/%d items, total=%s",
        order.id, len(kept), len(draft), order.total_price,
    )
    if dispatcher is not None:
        dispatcher.wake()
    return order


async def _check(
    availability: AvailabilityOracle,
    metrics: MetricsRecorder,
    draft: list[OrderItem],
) -> list[tuple[str, bool]]:
    """在庫確認。到達できなければ全明細を在庫なしとして扱う (fail-closed)。"""
    try:
        return await availability.check_availability(
            [(item.sku, item.quantity) for item in draft]
        )
    except Unavailable as e:
        metrics.increment("availability.unavailable")
        logger.warning("Treating all items as unavailable: %s", e)
        return [(item.sku, False) for item in draft]


async def cancel_order(
    session: AsyncSession,
    metrics: MetricsRecorder,
    order_id: int,
    dispatcher: outbox.OutboxDispatcher | None = None,
) -> Order:
    """
    注文キャンセルコマンド

    既にキャンセル済みなら何もしない (イベントも再送しない)。
    CANCELLED イベントは注文時に保存した明細・数量をそのまま運ぶ。
    """
    order = await queries.load_order(session, order_id)
    if order is None:
        raise NotFound("order", order_id)

    if not order.cancel():
        logger.info("Order %s already cancelled", order_id)
        return order

    # 条件付き UPDATE: 同時キャンセルでも遷移は 1 回だけ
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .where(orders.c.status == OrderStatus.PLACED.value)
        .values(
            status=OrderStatus.CANCELLED.value,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if result.rowcount == 0:
        await session.rollback()
        logger.info("Order %s was cancelled concurrently", order_id)
        return await queries.load_order(session, order_id)

    await outbox.append(session, build_event(order, OrderStatus.CANCELLED))
    await session.commit()

    metrics.increment("orders.cancelled")
    logger.info("Order %s cancelled", order_id)
    if dispatcher is not None:
        dispatcher.wake()
    return order
