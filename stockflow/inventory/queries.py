"""
Inventory Service - クエリハンドラ (Read 側)

check_availability は在庫確認 API の本体。読み取りだけで、予約もロックもしない。
"""

from datetime import timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from .tables import inventory, stock_movements


async def check_availability(
    session: AsyncSession, items: list[tuple[str, int]]
) -> list[tuple[str, bool]]:
    """
    (sku, quantity) ごとに在庫数 >= quantity かを返す。入力と同じ順序。
    存在しない SKU が 1 つでもあれば NotFound (「在庫なし」とは区別する)。
    """
    skus = {sku for sku, _quantity in items}
    result = await session.execute(
        select(inventory.c.sku, inventory.c.quantity).where(inventory.c.sku.in_(skus))
    )
    on_hand = dict(result.all())

    availability = []
    for sku, quantity in items:
        if sku not in on_hand:
            raise NotFound("product", sku)
        availability.append((sku, on_hand[sku] >= quantity))
    return availability


async def get_product(session: AsyncSession, sku: str) -> dict | None:
    result = await session.execute(select(inventory).where(inventory.c.sku == sku))
    row = result.fetchone()
    if not row:
        return None
    return _product(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(inventory).order_by(inventory.c.sku))
    return [_product(row) for row in result.fetchall()]


async def list_shortfalls(session: AsyncSession) -> list[dict]:
    """減算時に在庫が足りず、要求より少なく減らした記録 (照合用)。"""
    result = await session.execute(
        select(stock_movements)
        .where(stock_movements.c.applied < stock_movements.c.requested)
        .order_by(stock_movements.c.id)
    )
    return [
        {
            "orderId": row.order_id,
            "eventType": row.event_type,
            "skuCode": row.sku,
            "requested": row.requested,
            "applied": row.applied,
            "shortfall": row.requested - row.applied,
            "createdAt": _iso(row.created_at),
        }
        for row in result.fetchall()
    ]


def _product(row) -> dict:
    return {
        "skuCode": row.sku,
        "productName": row.product_name,
        "quantity": row.quantity,
        "price": str(row.price),
        "updatedAt": _iso(row.updated_at),
    }


def _iso(value) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
