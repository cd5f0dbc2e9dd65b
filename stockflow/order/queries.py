"""
Order Service - クエリハンドラ (Read 側)
"""

from datetime import timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, OrderItem, OrderStatus
from .tables import order_items, orders


async def load_order(session: AsyncSession, order_id: int) -> Order | None:
    """注文と明細を 1 つの集約として読み出す。"""
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None

    items = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.position)
    )
    return _to_order(row, items.fetchall())


async def list_orders(session: AsyncSession) -> list[Order]:
    result = await session.execute(select(orders).order_by(orders.c.id.desc()))
    rows = result.fetchall()
    if not rows:
        return []

    items = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_([row.id for row in rows]))
        .order_by(order_items.c.order_id, order_items.c.position)
    )
    by_order: dict[int, list] = {}
    for item in items.fetchall():
        by_order.setdefault(item.order_id, []).append(item)
    return [_to_order(row, by_order.get(row.id, [])) for row in rows]


def _to_order(row, item_rows) -> Order:
    order_date = row.order_date
    if order_date.tzinfo is None:
        order_date = order_date.replace(tzinfo=timezone.utc)
    return Order(
        id=row.id,
        items=[
            OrderItem(
                sku=item.sku,
                quantity=item.quantity,
                unit_price=Decimal(str(item.unit_price)),
                product_name=item.product_name,
            )
            for item in item_rows
        ],
        order_date=order_date,
        status=OrderStatus(row.status),
        total=Decimal(str(row.total_price)),
    )


def to_dict(order: Order) -> dict:
    return {
        "orderId": order.id,
        "status": order.status.value,
        "orderDate": order.order_date.isoformat(),
        "totalPrice": str(order.total_price),
        "orderItems": [
            {
                "skuCode": item.sku,
                "productName": item.product_name,
                "quantity": item.quantity,
                "price": str(item.unit_price),
            }
            for item in order.items
        ],
    }
