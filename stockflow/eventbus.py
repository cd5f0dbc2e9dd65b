"""
イベントバス - パーティション付き・at-least-once の Pub/Sub

Redis Pub/Sub は fire-and-forget で、購読者が落ちている間のイベントは失われる。
ここでは Redis Streams + Consumer Group を使い、
  - トピックごとに N 本のストリーム (パーティション) を持つ
  - 同じ partition_key (= 注文 ID) は常に同じストリームに入る → 注文単位で順序保証
  - ハンドラが成功したときだけ XACK する → 失敗したメッセージは再配信される
  - 再起動時は自分の未 ACK メッセージ (PEL) から読み直す

  ┌───────────────┐  XADD   ┌──────────────────┐  XREADGROUP  ┌───────────────────┐
  │ Order Service │ ──────▶ │ order_placed.0..N │ ───────────▶ │ Inventory Service │
  │  (Outbox)     │         │ order_cancelled.* │ ◀─── XACK ── │  (Consumer Group) │
  └───────────────┘         └──────────────────┘              └───────────────────┘
"""

import asyncio
import json
import logging
import zlib
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .errors import PublishFailure

logger = logging.getLogger(__name__)

TOPIC_ORDER_PLACED = "order_placed"
TOPIC_ORDER_CANCELLED = "order_cancelled"
ORDER_TOPICS = (TOPIC_ORDER_PLACED, TOPIC_ORDER_CANCELLED)

Handler = Callable[[str, dict], Awaitable[None]]


def partition_for(partition_key, partitions: int) -> int:
    """partition_key をパーティション番号に割り当てる (プロセスをまたいで安定)。"""
    return zlib.crc32(str(partition_key).encode()) % partitions


def stream_name(topic: str, partition: int) -> str:
    return f"{topic}.{partition}"


def topic_of(stream: str) -> str:
    return stream.rsplit(".", 1)[0]


def backoff_delay(attempts: int, base: float, maximum: float) -> float:
    """attempts 回目の失敗後の待ち時間 (base から倍々、maximum で頭打ち)"""
    return min(maximum, base * 2 ** max(attempts - 1, 0))


@dataclass
class Delivery:
    """Consumer に配信された 1 メッセージ"""

    stream: str
    message_id: str
    partition_key: str
    payload: dict

    @property
    def topic(self) -> str:
        return topic_of(self.stream)


class EventBus(Protocol):
    partitions: int

    async def publish(self, topic: str, partition_key, payload: dict) -> str: ...

    async def ensure_group(self, stream: str, group: str) -> None: ...

    async def read_pending(
        self, stream: str, group: str, consumer: str
    ) -> Delivery | None: ...

    async def read_new(
        self, stream: str, group: str, consumer: str, block_ms: int
    ) -> Delivery | None: ...

    async def ack(self, stream: str, group: str, message_id: str) -> None: ...

    async def dead_letter(self, delivery: Delivery, error: str) -> None: ...


# ── Redis Streams 実装 ───────────────────────────


class RedisStreamEventBus:
    def __init__(self, redis: aioredis.Redis, partitions: int = 4) -> None:
        self.redis = redis
        self.partitions = partitions

    async def publish(self, topic: str, partition_key, payload: dict) -> str:
        stream = stream_name(topic, partition_for(partition_key, self.partitions))
        try:
            return await self.redis.xadd(
                stream,
                {"key": str(partition_key), "payload": json.dumps(payload, default=str)},
            )
        except RedisError as e:
            raise PublishFailure(topic, partition_key) from e

    async def ensure_group(self, stream: str, group: str) -> None:
        try:
            await self.redis.xgroup_create(stream, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read_pending(self, stream, group, consumer):
        # ID "0" は自分宛ての未 ACK メッセージ (PEL) を先頭から返す
        return await self._read(stream, group, consumer, "0", block_ms=None)

    async def read_new(self, stream, group, consumer, block_ms):
        return await self._read(stream, group, consumer, ">", block_ms=block_ms)

    async def _read(self, stream, group, consumer, last_id, block_ms):
        response = await self.redis.xreadgroup(
            group, consumer, {stream: last_id}, count=1, block=block_ms
        )
        for _stream, messages in response or []:
            for message_id, fields in messages:
                if not fields:
                    # PEL に残っているがストリームから削除 (XTRIM) されたメッセージ
                    await self.ack(stream, group, message_id)
                    continue
                return Delivery(
                    stream=stream,
                    message_id=message_id,
                    partition_key=fields["key"],
                    payload=json.loads(fields["payload"]),
                )
        return None

    async def ack(self, stream, group, message_id):
        await self.redis.xack(stream, group, message_id)

    async def dead_letter(self, delivery, error):
        await self.redis.xadd(
            f"{delivery.stream}.dead",
            {
                "key": delivery.partition_key,
                "payload": json.dumps(delivery.payload, default=str),
                "message_id": delivery.message_id,
                "error": error,
            },
        )


# ── インメモリ実装 (ローカル実行・テスト用) ─────────


@dataclass
class _Group:
    next_index: int = 0
    # message_id -> consumer 名 (挿入順 = 配信順)
    pending: dict[str, str] = field(default_factory=dict)


@dataclass
class _Stream:
    entries: list[tuple[str, str, dict]] = field(default_factory=list)
    groups: dict[str, _Group] = field(default_factory=dict)
    sequence: int = 0
    arrived: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryEventBus:
    """
    Redis Streams と同じ配信セマンティクスを持つプロセス内のバス。

    published には発行順に (topic, partition_key, payload) が残る。
    """

    def __init__(self, partitions: int = 4) -> None:
        self.partitions = partitions
        self.published: list[tuple[str, str, dict]] = []
        self.dead_letters: list[tuple[Delivery, str]] = []
        self._streams: dict[str, _Stream] = {}

    def _stream(self, name: str) -> _Stream:
        if name not in self._streams:
            self._streams[name] = _Stream()
        return self._streams[name]

    def messages(self, topic: str) -> list[dict]:
        return [payload for t, _key, payload in self.published if t == topic]

    async def publish(self, topic, partition_key, payload):
        stream = self._stream(
            stream_name(topic, partition_for(partition_key, self.partitions))
        )
        stream.sequence += 1
        message_id = f"{stream.sequence}-0"
        # 受信側がコピーを受け取るよう JSON を経由させる
        body = json.loads(json.dumps(payload, default=str))
        stream.entries.append((message_id, str(partition_key), body))
        self.published.append((topic, str(partition_key), body))
        stream.arrived.set()
        return message_id

    async def ensure_group(self, stream, group):
        self._stream(stream).groups.setdefault(group, _Group())

    async def read_pending(self, stream, group, consumer):
        s = self._stream(stream)
        g = s.groups[group]
        for message_id, owner in g.pending.items():
            if owner == consumer:
                return self._delivery(stream, s, message_id)
        return None

    async def read_new(self, stream, group, consumer, block_ms):
        s = self._stream(stream)
        g = s.groups[group]
        if g.next_index >= len(s.entries):
            s.arrived.clear()
            try:
                await asyncio.wait_for(s.arrived.wait(), timeout=block_ms / 1000)
            except asyncio.TimeoutError:
                return None
            if g.next_index >= len(s.entries):
                return None
        message_id = s.entries[g.next_index][0]
        g.next_index += 1
        g.pending[message_id] = consumer
        return self._delivery(stream, s, message_id)

    def _delivery(self, name: str, s: _Stream, message_id: str) -> Delivery:
        for entry_id, key, payload in s.entries:
            if entry_id == message_id:
                return Delivery(
                    stream=name,
                    message_id=message_id,
                    partition_key=key,
                    payload=json.loads(json.dumps(payload)),
                )
        raise KeyError(message_id)

    async def ack(self, stream, group, message_id):
        self._stream(stream).groups[group].pending.pop(message_id, None)

    async def dead_letter(self, delivery, error):
        self.dead_letters.append((delivery, error))

    def pending_count(self, group: str) -> int:
        return sum(
            len(s.groups[group].pending)
            for s in self._streams.values()
            if group in s.groups
        )


# ── Consumer ────────────────────────────────────


class StreamConsumer:
    """
    Consumer Group でトピックを購読し、ハンドラにイベントを渡す。

    パーティション (ストリーム) ごとに 1 タスクを起動するので、
    同じパーティション内は配信順に 1 件ずつ、パーティション間は並行に処理される。
    ハンドラが例外を送出したメッセージは ACK せず、同じメッセージを再処理する
    (後続メッセージには進まない)。待ち時間は retry_delay から倍々で retry_max まで。

    permanent_errors に該当する例外 (何度やっても成功しないもの) だけは
    max_deliveries 回でデッドレターに移して ACK する。それ以外 (DB 停止など) は
    成功するまで再試行し続ける。
    """

    def __init__(
        self,
        bus: EventBus,
        topics: tuple[str, ...],
        group: str,
        consumer: str,
        handler: Handler,
        max_deliveries: int = 5,
        retry_delay: float = 1.0,
        block_ms: int = 1000,
        retry_max: float = 30.0,
        permanent_errors: tuple[type[Exception], ...] = (),
    ) -> None:
        self.bus = bus
        self.topics = topics
        self.group = group
        self.consumer = consumer
        self.handler = handler
        self.max_deliveries = max_deliveries
        self.retry_delay = retry_delay
        self.block_ms = block_ms
        self.retry_max = retry_max
        self.permanent_errors = permanent_errors
        self._attempts: dict[tuple[str, str], int] = {}

    @property
    def streams(self) -> list[str]:
        return [
            stream_name(topic, partition)
            for topic in self.topics
            for partition in range(self.bus.partitions)
        ]

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで全パーティションを購読する。"""
        for stream in self.streams:
            await self.bus.ensure_group(stream, self.group)
        logger.info(
            "Consumer %s joined group %s on %d streams",
            self.consumer, self.group, len(self.streams),
        )
        await asyncio.gather(
            *(self._consume(stream, shutdown_event) for stream in self.streams)
        )

    async def _consume(self, stream: str, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await self.poll_once(stream)
            except Exception:
                logger.exception("Error while reading %s", stream)
                await asyncio.sleep(self.retry_delay)

    async def poll_once(self, stream: str) -> bool:
        """
        1 メッセージを処理する。処理対象がなければ False。

        未 ACK のメッセージがあればそれを優先する (再起動時の再開・失敗時の再試行)。
        """
        delivery = await self.bus.read_pending(stream, self.group, self.consumer)
        if delivery is None:
            delivery = await self.bus.read_new(
                stream, self.group, self.consumer, self.block_ms
            )
        if delivery is None:
            return False
        await self._process(delivery)
        return True

    async def _process(self, delivery: Delivery) -> None:
        attempt_key = (delivery.stream, delivery.message_id)
        try:
            await self.handler(delivery.topic, delivery.payload)
        except Exception as e:
            attempts = self._attempts.get(attempt_key, 0) + 1
            self._attempts[attempt_key] = attempts
            if not isinstance(e, self.permanent_errors):
                delay = backoff_delay(attempts, self.retry_delay, self.retry_max)
                logger.warning(
                    "Handler failed for %s %s (attempt %d), retrying in %.1fs",
                    delivery.stream, delivery.message_id, attempts, delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)
                return
            if attempts >= self.max_deliveries:
                logger.error(
                    "Dead-lettering %s %s after %d attempts: %r",
                    delivery.stream, delivery.message_id, attempts, e,
                )
                await self.bus.dead_letter(delivery, repr(e))
                await self.bus.ack(delivery.stream, self.group, delivery.message_id)
                self._attempts.pop(attempt_key, None)
                return
            logger.warning(
                "Rejected %s %s (attempt %d/%d): %r",
                delivery.stream, delivery.message_id, attempts, self.max_deliveries, e,
            )
            await asyncio.sleep(self.retry_delay)
            return

        await self.bus.ack(delivery.stream, self.group, delivery.message_id)
        self._attempts.pop(attempt_key, None)
