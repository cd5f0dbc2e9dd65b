"""
Order Service - イベント定義

注文イベントは「実際に保存された明細」をそのまま運ぶ。
キャンセルイベントは配置時に差し引かれたのと同じ明細・数量を運ぶので、
在庫サービスは再計算せずにそのまま戻せる。

event_id = "<orderId>:<eventType>" が冪等性キーになる。
"""

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..eventbus import TOPIC_ORDER_CANCELLED, TOPIC_ORDER_PLACED
from .aggregate import Order, OrderStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderEventItem(_CamelModel):
    sku_code: str
    quantity: int = Field(gt=0)
    product_name: str = ""
    price: Decimal


class OrderEvent(_CamelModel):
    """order_placed / order_cancelled トピックのペイロード"""

    event_id: str
    event_type: OrderStatus
    order_id: int
    order_items: list[OrderEventItem]
    total_price: Decimal
    order_date: datetime
    emitted_at: datetime

    @property
    def topic(self) -> str:
        return topic_for(self.event_type)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def event_id_for(order_id: int, event_type: OrderStatus) -> str:
    return f"{order_id}:{event_type.value}"


def topic_for(event_type: OrderStatus) -> str:
    if event_type is OrderStatus.CANCELLED:
        return TOPIC_ORDER_CANCELLED
    return TOPIC_ORDER_PLACED


def build_event(order: Order, event_type: OrderStatus) -> OrderEvent:
    """保存済みの注文からイベントを組み立てる。明細は注文のものをそのまま使う。"""
    return OrderEvent(
        event_id=event_id_for(order.id, event_type),
        event_type=event_type,
        order_id=order.id,
        order_items=[
            OrderEventItem(
                sku_code=item.sku,
                quantity=item.quantity,
                product_name=item.product_name,
                price=item.unit_price,
            )
            for item in order.items
        ],
        total_price=order.total_price,
        order_date=order.order_date,
        emitted_at=datetime.now(timezone.utc),
    )
