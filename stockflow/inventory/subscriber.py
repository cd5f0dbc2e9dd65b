"""
Inventory Service - イベントサブスクライバー

order_placed / order_cancelled を Consumer Group で購読し、在庫を調整する。
在庫の更新と冪等性台帳の記録がコミットされてから ACK する。

壊れたイベント (検証エラー) や未登録 SKU は再配信しても成功しないので、
max_deliveries 回でデッドレターに移す。DB 停止などの一時的な失敗は
メッセージを未 ACK のまま残し、復旧するまで再試行する。
"""

import asyncio
import logging

from sqlalchemy.orm import sessionmaker

from ..errors import NotFound
from ..eventbus import ORDER_TOPICS, EventBus, Handler, StreamConsumer
from ..metrics import MetricsRecorder
from . import commands
from .events import parse_event

logger = logging.getLogger(__name__)

# pydantic.ValidationError は ValueError のサブクラス
PERMANENT_ERRORS = (ValueError, NotFound)


def make_handler(
    async_session_factory: sessionmaker, metrics: MetricsRecorder
) -> Handler:
    async def handle(topic: str, payload: dict) -> None:
        event = parse_event(topic, payload)
        async with async_session_factory() as session:
            outcome = await commands.apply_event(session, metrics, event)
        logger.debug("%s %s -> %s", topic, event.idempotency_key, outcome.value)

    return handle


def make_consumer(
    bus: EventBus,
    async_session_factory: sessionmaker,
    metrics: MetricsRecorder,
    group: str = "inventory-service",
    consumer: str = "inventory-1",
    max_deliveries: int = 5,
    retry_delay: float = 1.0,
    retry_max: float = 30.0,
    block_ms: int = 1000,
) -> StreamConsumer:
    return StreamConsumer(
        bus,
        ORDER_TOPICS,
        group,
        consumer,
        make_handler(async_session_factory, metrics),
        max_deliveries=max_deliveries,
        retry_delay=retry_delay,
        block_ms=block_ms,
        retry_max=retry_max,
        permanent_errors=PERMANENT_ERRORS,
    )


async def run_subscriber(
    bus: EventBus,
    async_session_factory: sessionmaker,
    metrics: MetricsRecorder,
    shutdown_event: asyncio.Event,
    **options,
) -> None:
    """shutdown_event がセットされるまで購読を続ける。options は make_consumer へ。"""
    stream_consumer = make_consumer(bus, async_session_factory, metrics, **options)
    await stream_consumer.run(shutdown_event)
