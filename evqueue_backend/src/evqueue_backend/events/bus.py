"""EventBus: 实时推送总线

- 订阅时先发送 connected，再发送一份完整的 initial_state 快照（从不发送差量），
  之后的增量事件都以条目ID为键，客户端拿到最新快照即可无损应用
- publish 对每个仍然打开的订阅通道写入同一份序列化结果，写入失败的订阅立即移除，
  且 publish 永不抛出异常
- 每个订阅各自运行心跳任务，防止中间代理断开空闲连接

线上格式为换行分隔的 JSON（NDJSON），信封结构：{type, timestamp, ...payload}
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from ..timers.clock import Clock, SystemClock

logger = logging.getLogger("evqueue.events")

SnapshotProvider = Callable[[], List[Dict[str, Any]]]


class EventType:
    Connected = "connected"
    InitialState = "initial_state"
    QueueUpdate = "queue_update"
    TimerStarted = "timer_started"
    AlmostComplete = "almost_complete"
    Overtime = "overtime"
    Completed = "completed"
    Heartbeat = "heartbeat"


def make_event(event_type: str, *, clock: Optional[Clock] = None, **payload: Any) -> Dict[str, Any]:
    """构造事件信封，timestamp 为毫秒级 Unix 时间戳"""
    now = (clock or SystemClock()).now()
    event: Dict[str, Any] = {"type": event_type, "timestamp": int(now.timestamp() * 1000)}
    event.update(payload)
    return event


def encode_event(event: Dict[str, Any]) -> str:
    return json.dumps(event, default=str, ensure_ascii=False) + "\n"


class ChannelClosed(Exception):
    """通道已关闭或积压过多，写入失败"""


class Channel(Protocol):
    def write(self, data: str) -> None:
        ...

    def close(self) -> None:
        ...


class QueueChannel:
    """基于 asyncio.Queue 的有界通道，由 HTTP 流式响应消费"""

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def write(self, data: str) -> None:
        if self.closed:
            raise ChannelClosed("channel closed")
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull as e:
            raise ChannelClosed("subscriber is not keeping up") from e

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # 腾出位置放入结束标记，保证读取方能退出
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def lines(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    def pending(self) -> int:
        return self._queue.qsize()


class Subscriber:
    """一个订阅者连接"""

    def __init__(self, channel: Channel):
        self.id = uuid.uuid4().hex[:12]
        self.channel = channel
        self.open = True
        self.heartbeat_task: Optional[asyncio.Task] = None

    def close(self) -> None:
        self.open = False
        task = self.heartbeat_task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        try:
            self.channel.close()
        except Exception as e:  # 通道关闭失败不影响其余订阅
            logger.debug("关闭订阅通道失败 subscriber=%s error=%s", self.id, e)

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id}, open={self.open})"


class EventBus:
    """实时事件总线"""

    def __init__(
        self,
        snapshot_provider: SnapshotProvider,
        *,
        heartbeat_interval: float = 30.0,
        max_pending_events: int = 256,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            snapshot_provider: 返回当前完整队列快照的函数
            heartbeat_interval: 心跳间隔（秒）
            max_pending_events: 每个订阅通道允许积压的最大事件数
            clock: 生成时间戳所用的时钟
        """
        self._snapshot_provider = snapshot_provider
        self._heartbeat_interval = heartbeat_interval
        self._max_pending = max_pending_events
        self._clock = clock or SystemClock()
        self._subscribers: Dict[str, Subscriber] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def event(self, event_type: str, **payload: Any) -> Dict[str, Any]:
        return make_event(event_type, clock=self._clock, **payload)

    async def subscribe(self, channel: Optional[Channel] = None) -> Subscriber:
        """注册订阅并立即发送 connected + initial_state"""
        subscriber = Subscriber(channel or QueueChannel(self._max_pending))
        self._subscribers[subscriber.id] = subscriber
        logger.info("新订阅 subscriber=%s total=%d", subscriber.id, self.subscriber_count)

        if not self._send(subscriber, self.event(EventType.Connected)):
            return subscriber

        try:
            queue = self._snapshot_provider()
        except Exception as e:
            logger.exception("获取初始队列快照失败 subscriber=%s: %s", subscriber.id, e)
            self._drop(subscriber)
            return subscriber

        if not self._send(subscriber, self.event(EventType.InitialState, queue=queue)):
            return subscriber

        subscriber.heartbeat_task = asyncio.get_running_loop().create_task(
            self._heartbeat(subscriber)
        )
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber.id in self._subscribers:
            logger.info("订阅断开 subscriber=%s", subscriber.id)
        self._drop(subscriber)

    def publish(self, event: Dict[str, Any]) -> int:
        """广播事件，返回成功写入的订阅数量（永不抛出）"""
        try:
            data = encode_event(event)
        except (TypeError, ValueError) as e:
            logger.error("事件序列化失败 type=%s error=%s", event.get("type"), e)
            return 0

        delivered = 0
        for subscriber in list(self._subscribers.values()):
            if self._write(subscriber, data):
                delivered += 1

        logger.debug(
            "广播事件 type=%s delivered=%d remaining=%d",
            event.get("type"),
            delivered,
            len(self._subscribers),
        )
        return delivered

    def publish_event(self, event_type: str, **payload: Any) -> int:
        return self.publish(self.event(event_type, **payload))

    def publish_queue_update(self) -> int:
        """广播一份新的完整队列快照"""
        try:
            queue = self._snapshot_provider()
        except Exception as e:
            logger.exception("获取队列快照失败，跳过 queue_update: %s", e)
            return 0
        return self.publish(self.event(EventType.QueueUpdate, queue=queue))

    async def close(self) -> None:
        """关闭全部订阅（应用关闭时调用）"""
        tasks = []
        for subscriber in list(self._subscribers.values()):
            if subscriber.heartbeat_task is not None:
                tasks.append(subscriber.heartbeat_task)
            self._drop(subscriber)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("事件总线已关闭")

    async def _heartbeat(self, subscriber: Subscriber) -> None:
        while subscriber.open:
            await asyncio.sleep(self._heartbeat_interval)
            if not subscriber.open:
                break
            if not self._send(subscriber, self.event(EventType.Heartbeat)):
                break

    def _send(self, subscriber: Subscriber, event: Dict[str, Any]) -> bool:
        try:
            data = encode_event(event)
        except (TypeError, ValueError) as e:
            logger.error("事件序列化失败 type=%s error=%s", event.get("type"), e)
            return False
        return self._write(subscriber, data)

    def _write(self, subscriber: Subscriber, data: str) -> bool:
        if not subscriber.open:
            self._drop(subscriber)
            return False
        try:
            subscriber.channel.write(data)
            return True
        except Exception as e:
            logger.info("写入订阅失败，移除 subscriber=%s reason=%s", subscriber.id, e)
            self._drop(subscriber)
            return False

    def _drop(self, subscriber: Subscriber) -> None:
        self._subscribers.pop(subscriber.id, None)
        if subscriber.open:
            subscriber.close()
