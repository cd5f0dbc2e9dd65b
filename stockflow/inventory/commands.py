"""
Inventory Service - コマンドハンドラ (在庫調整)

order_placed / order_cancelled イベントを受けて在庫を増減する。
イベントは at-least-once で届くので、同じイベントが 2 回以上届いても
在庫が 1 回分しか動かないようにする:

  1 トランザクション内で
    1. processed_events に (order_id, event_type) があれば重複 → 何もしない
    2. 在庫を増減し、実際に動かした数を stock_movements に記録
    3. processed_events に記録
    4. コミット

途中で失敗したらロールバックされ、ACK されないので再配信で再試行される。
同じイベントが並行に処理された場合は、主キー違反になった側がロールバックする。

在庫不足 (在庫確認と減算の間の競合) の場合は 0 で下げ止めて、不足分を記録・アラートする。
キャンセル時は stock_movements に記録された「実際に減らした数」だけ戻す。

商品登録 (POST /api/products) もここで扱う。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AlreadyExists, DuplicateEvent, InsufficientStock
from ..metrics import MetricsRecorder
from . import store
from .events import EventType, OrderEventMessage
from .tables import processed_events, stock_movements

logger = logging.getLogger(__name__)


class AdjustmentOutcome(str, Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"


async def apply_event(
    session: AsyncSession,
    metrics: MetricsRecorder,
    event: OrderEventMessage,
) -> AdjustmentOutcome:
    """イベントを在庫に反映する。処理済みなら DUPLICATE を返す。"""
    try:
        if await _is_processed(session, event.order_id, event.event_type):
            raise DuplicateEvent(event.idempotency_key)

        if event.event_type is EventType.PLACED:
            await _apply_placed(session, metrics, event)
        else:
            await _apply_cancelled(session, event)

        await session.execute(
            insert(processed_events).values(
                order_id=event.order_id,
                event_type=event.event_type.value,
                event_id=event.idempotency_key,
                processed_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
    except DuplicateEvent as e:
        await session.rollback()
        metrics.increment("inventory.events.duplicate")
        logger.info("Skipping duplicate delivery: %s", e.event_id)
        return AdjustmentOutcome.DUPLICATE
    except IntegrityError:
        await session.rollback()
        if await _is_processed(session, event.order_id, event.event_type):
            metrics.increment("inventory.events.duplicate")
            logger.info(
                "Concurrent duplicate delivery rolled back: %s", event.idempotency_key
            )
            return AdjustmentOutcome.DUPLICATE
        raise

    metrics.increment(f"inventory.events.{event.event_type.value.lower()}")
    logger.info(
        "Applied %s for order %s (%d items)",
        event.event_type.value, event.order_id, len(event.order_items),
    )
    return AdjustmentOutcome.APPLIED


async def _is_processed(
    session: AsyncSession, order_id: int, event_type: EventType
) -> bool:
    result = await session.execute(
        select(processed_events.c.order_id)
        .where(processed_events.c.order_id == order_id)
        .where(processed_events.c.event_type == event_type.value)
    )
    return result.first() is not None


async def _apply_placed(
    session: AsyncSession, metrics: MetricsRecorder, event: OrderEventMessage
) -> None:
    if await _is_processed(session, event.order_id, EventType.CANCELLED):
        # CANCELLED は別ストリームなので PLACED より先に届くことがある
        logger.warning(
            "Order %s already cancelled here, not deducting stock", event.order_id
        )
        return

    for item in event.order_items:
        try:
            await store.decrement(session, item.sku_code, item.quantity)
            applied = item.quantity
        except InsufficientStock as e:
            applied = await store.take_available(session, item.sku_code, item.quantity)
            metrics.increment("inventory.shortfall")
            logger.error(
                "Stock shortfall for order %s: %s requested=%d on_hand=%d applied=%d",
                event.order_id, e.sku, e.requested, e.on_hand, applied,
            )
        await _record_movement(
            session, event.order_id, EventType.PLACED, item.sku_code, item.quantity, applied
        )


async def _apply_cancelled(session: AsyncSession, event: OrderEventMessage) -> None:
    result = await session.execute(
        select(stock_movements)
        .where(stock_movements.c.order_id == event.order_id)
        .where(stock_movements.c.event_type == EventType.PLACED.value)
        .order_by(stock_movements.c.id)
    )
    placed = result.fetchall()
    if not placed:
        logger.warning(
            "Order %s cancelled but no stock was deducted for it, nothing to restore",
            event.order_id,
        )
        return

    requested = sorted((row.sku, row.requested) for row in placed)
    announced = sorted((item.sku_code, item.quantity) for item in event.order_items)
    if requested != announced:
        logger.warning(
            "Cancellation items for order %s differ from placement: %s != %s",
            event.order_id, announced, requested,
        )

    for row in placed:
        if row.applied:
            await store.increment(session, row.sku, row.applied)
        await _record_movement(
            session, event.order_id, EventType.CANCELLED, row.sku, row.applied, row.applied
        )


async def _record_movement(
    session: AsyncSession,
    order_id: int,
    event_type: EventType,
    sku: str,
    requested: int,
    applied: int,
) -> None:
    await session.execute(
        insert(stock_movements).values(
            order_id=order_id,
            event_type=event_type.value,
            sku=sku,
            requested=requested,
            applied=applied,
            created_at=datetime.now(timezone.utc),
        )
    )


async def register_product(
    session: AsyncSession,
    sku: str,
    product_name: str,
    quantity: int,
    price: Decimal,
) -> None:
    """商品登録コマンド。同じ SKU が既にあれば AlreadyExists。"""
    try:
        await store.register_stock(session, sku, product_name, quantity, price)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise AlreadyExists("product", sku)
    logger.info("Registered product %s with %d in stock", sku, quantity)
