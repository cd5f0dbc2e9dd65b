"""
Order Service - Transactional Outbox

注文の保存とイベント発行の間には隙間がある:
注文はコミットされたのにブローカーへの送信が失敗すると、在庫サービスは
その注文を永遠に知らないままになる。

そこでイベントを outbox テーブルに注文と同じトランザクションで書き込み、
OutboxDispatcher がバックグラウンドで送信する。

  ┌──────────────┐  1 トランザクション  ┌────────────┐
  │ create_order │ ─────────────────▶  │ orders     │
  │ cancel_order │                     │ order_items│
  └──────┬───────┘                     │ outbox     │
         │ wake()                      └─────┬──────┘
  ┌──────▼───────────┐   SELECT PENDING      │
  │ OutboxDispatcher │ ◀─────────────────────┘
  └──────┬───────────┘
         │ publish (失敗したら指数バックオフで再試行)
         ▼
     Event Bus
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..errors import PublishFailure
from ..eventbus import EventBus, backoff_delay
from .events import OrderEvent
from .tables import outbox

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"


async def append(session: AsyncSession, event: OrderEvent) -> None:
    """イベントを outbox に追加する。コミットは呼び出し側のトランザクションで行う。"""
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(outbox).values(
            event_id=event.event_id,
            topic=event.topic,
            partition_key=str(event.order_id),
            payload=json.dumps(event.to_payload()),
            status=OutboxStatus.PENDING.value,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
    )


async def status_counts(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(outbox.c.status, func.count()).group_by(outbox.c.status)
    )
    counts = {status.value: 0 for status in OutboxStatus}
    counts.update({status: count for status, count in result.all()})
    return counts


def _as_utc(value: datetime) -> datetime:
    # SQLite はタイムゾーンを保存しない
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        bus: EventBus,
        batch_size: int = 100,
        poll_interval: float = 1.0,
        retry_base: float = 0.5,
        retry_max: float = 60.0,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.retry_base = retry_base
        self.retry_max = retry_max
        self._wakeup = asyncio.Event()

    def wake(self) -> None:
        """コミット直後に呼ぶと、ポーリングを待たずに送信する。"""
        self._wakeup.set()

    async def dispatch_once(self) -> int:
        """
        送信待ちのイベントを id 順に送信し、送信できた件数を返す。

        同じ partition_key (注文) の前のイベントが送れなかった場合、
        後ろのイベントは次回に回す (注文単位の順序を崩さない)。
        """
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            result = await session.execute(
                select(outbox)
                .where(outbox.c.status == OutboxStatus.PENDING.value)
                .order_by(outbox.c.id)
                .limit(self.batch_size)
            )
            rows = result.fetchall()

        blocked: set[str] = set()
        sent = 0
        for row in rows:
            if row.partition_key in blocked:
                continue
            if _as_utc(row.next_attempt_at) > now:
                blocked.add(row.partition_key)
                continue

            try:
                message_id = await self.bus.publish(
                    row.topic, row.partition_key, json.loads(row.payload)
                )
            except PublishFailure as e:
                blocked.add(row.partition_key)
                await self._reschedule(row, e)
                continue

            await self._mark_sent(row.id)
            sent += 1
            logger.info(
                "Published %s to %s (order=%s, message=%s)",
                row.event_id, row.topic, row.partition_key, message_id,
            )
        return sent

    async def _mark_sent(self, row_id: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(outbox)
                .where(outbox.c.id == row_id)
                .values(
                    status=OutboxStatus.SENT.value,
                    sent_at=datetime.now(timezone.utc),
                    last_error=None,
                )
            )
            await session.commit()

    async def _reschedule(self, row, error: Exception) -> None:
        attempts = row.attempts + 1
        delay = backoff_delay(attempts, self.retry_base, self.retry_max)
        cause = error.__cause__ or error
        logger.error(
            "Failed to publish %s to %s (attempt %d), retrying in %.1fs: %r",
            row.event_id, row.topic, attempts, delay, cause,
        )
        async with self.session_factory() as session:
            await session.execute(
                update(outbox)
                .where(outbox.c.id == row.id)
                .values(
                    attempts=attempts,
                    next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
                    last_error=repr(cause),
                )
            )
            await session.commit()

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで送信を繰り返す。"""
        logger.info("Outbox dispatcher started")
        while not shutdown_event.is_set():
            # 送信中に wake() されたら次の待ちはすぐ抜ける
            self._wakeup.clear()
            try:
                await self.dispatch_once()
            except Exception:
                logger.exception("Outbox dispatch failed")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
