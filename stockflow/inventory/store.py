"""
Inventory Service - 在庫ストア

在庫数の増減はすべて条件付き UPDATE 1 文で行う (読んでから書くことはしない)。
別パーティションの注文が同じ SKU を同時に更新しても更新は失われず、
在庫数がマイナスになることもない。

トランザクションの境界は呼び出し側 (commands.py) が持つ。
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStock, NotFound
from .tables import inventory


async def get_quantity(session: AsyncSession, sku: str) -> int:
    result = await session.execute(
        select(inventory.c.quantity).where(inventory.c.sku == sku)
    )
    quantity = result.scalar_one_or_none()
    if quantity is None:
        raise NotFound("product", sku)
    return quantity


async def decrement(session: AsyncSession, sku: str, quantity: int) -> None:
    """在庫を quantity だけ減らす。足りなければ InsufficientStock。"""
    result = await session.execute(
        update(inventory)
        .where(inventory.c.sku == sku)
        .where(inventory.c.quantity >= quantity)
        .values(
            quantity=inventory.c.quantity - quantity,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if result.rowcount == 0:
        # SKU がないのか在庫不足なのかを区別する
        on_hand = await get_quantity(session, sku)
        raise InsufficientStock(sku, quantity, on_hand)


async def increment(session: AsyncSession, sku: str, quantity: int) -> None:
    result = await session.execute(
        update(inventory)
        .where(inventory.c.sku == sku)
        .values(
            quantity=inventory.c.quantity + quantity,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if result.rowcount == 0:
        raise NotFound("product", sku)


async def take_available(session: AsyncSession, sku: str, quantity: int) -> int:
    """
    最大 quantity まで在庫を減らし、実際に減らした数を返す (0 で下げ止まり)。

    読み取った在庫数を条件にした compare-and-set なので、
    間に別の更新が入ったらやり直す。
    """
    while True:
        on_hand = await get_quantity(session, sku)
        take = min(on_hand, quantity)
        if take == 0:
            return 0
        result = await session.execute(
            update(inventory)
            .where(inventory.c.sku == sku)
            .where(inventory.c.quantity == on_hand)
            .values(
                quantity=on_hand - take,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount == 1:
            return take


async def register_stock(
    session: AsyncSession,
    sku: str,
    product_name: str,
    quantity: int,
    price: Decimal = Decimal("0"),
) -> None:
    """商品登録 (オンボーディング用)。コミットは呼び出し側で行う。"""
    if quantity < 0:
        raise ValueError(f"quantity must not be negative: {sku}={quantity}")
    await session.execute(
        insert(inventory).values(
            sku=sku,
            product_name=product_name,
            quantity=quantity,
            price=price,
            updated_at=datetime.now(timezone.utc),
        )
    )
