"""
Inventory Service - 受信イベント定義

Order Service が発行する order_placed / order_cancelled のペイロード。
在庫調整に必要なフィールドだけを読み、それ以外は無視する。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..eventbus import TOPIC_ORDER_CANCELLED, TOPIC_ORDER_PLACED


class EventType(str, Enum):
    PLACED = "PLACED"
    CANCELLED = "CANCELLED"


TOPIC_EVENT_TYPES = {
    TOPIC_ORDER_PLACED: EventType.PLACED,
    TOPIC_ORDER_CANCELLED: EventType.CANCELLED,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class EventItem(_CamelModel):
    sku_code: str
    quantity: int = Field(gt=0)


class OrderEventMessage(_CamelModel):
    order_id: int
    event_type: EventType
    order_items: list[EventItem]
    event_id: str | None = None
    emitted_at: datetime | None = None

    @property
    def idempotency_key(self) -> str:
        return self.event_id or f"{self.order_id}:{self.event_type.value}"


def parse_event(topic: str, payload: dict) -> OrderEventMessage:
    """
    ペイロードをパースする。eventType がないメッセージはトピックから補う。
    トピックと eventType が食い違う場合は ValueError。
    """
    expected = TOPIC_EVENT_TYPES[topic]
    payload = {"eventType": expected.value, **payload}
    message = OrderEventMessage.model_validate(payload)
    if message.event_type is not expected:
        raise ValueError(
            f"event type {message.event_type.value} does not match topic {topic}"
        )
    return message
