"""Notifier: 即发即忘的通知分发

解析用户信息与充电桩名称后，在后台任务中调用网关。投递失败只记录日志，
不会阻塞或回滚任何状态变更。drain() 用于关闭前（以及测试中）等待在途通知。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Set

from ..config.settings import StationConfig
from ..models.entry import Entry, UserInfo
from .gateway import NotificationGateway

logger = logging.getLogger("evqueue.notifications")


class Directory(Protocol):
    def resolve(self, user_id: int) -> Optional[UserInfo]:
        ...


class Notifier:
    def __init__(
        self,
        gateway: NotificationGateway,
        directory: Directory,
        stations: StationConfig,
        *,
        enabled: bool = True,
    ):
        self.gateway = gateway
        self.directory = directory
        self.stations = stations
        self.enabled = enabled
        self._pending: Set[asyncio.Task] = set()
        self.sent_count = 0
        self.failed_count = 0

    def station_ready(self, entry: Entry) -> None:
        name = self.stations.name_for(entry.station_id)
        self._dispatch(
            "station_ready",
            entry.user_id,
            lambda r: self.gateway.send_station_ready(r, name),
        )

    def almost_complete(self, entry: Entry, minutes_remaining: int) -> None:
        name = self.stations.name_for(entry.station_id)
        self._dispatch(
            "almost_complete",
            entry.user_id,
            lambda r: self.gateway.send_almost_complete(r, name, minutes_remaining),
        )

    def expired(self, entry: Entry, overtime_minutes: int = 0) -> None:
        name = self.stations.name_for(entry.station_id)
        self._dispatch(
            "expired",
            entry.user_id,
            lambda r: self.gateway.send_expired(r, name, overtime_minutes),
        )

    def complete(self, entry: Entry, duration_minutes: int) -> None:
        name = self.stations.name_for(entry.station_id)
        self._dispatch(
            "complete",
            entry.user_id,
            lambda r: self.gateway.send_complete(r, name, duration_minutes),
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """等待所有在途通知结束"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _dispatch(
        self,
        kind: str,
        user_id: int,
        send: Callable[[UserInfo], Awaitable[None]],
    ) -> None:
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("没有运行中的事件循环，丢弃通知 kind=%s user=%s", kind, user_id)
            return

        task = loop.create_task(self._deliver(kind, user_id, send))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(
        self,
        kind: str,
        user_id: int,
        send: Callable[[UserInfo], Awaitable[None]],
    ) -> None:
        try:
            recipient = self.directory.resolve(user_id)
            if recipient is None:
                logger.warning("用户不存在，跳过通知 kind=%s user=%s", kind, user_id)
                return
            await send(recipient)
            self.sent_count += 1
            logger.debug("通知已发送 kind=%s user=%s", kind, user_id)
        except Exception as e:
            self.failed_count += 1
            logger.error("通知发送失败 kind=%s user=%s error=%s", kind, user_id, e)
