"""QueueRuntime: 组件装配

按依赖顺序构造：配置 → 数据库 → 仓储/用户目录 → 队列视图 → 事件总线 →
通知 → 计时注册表/引擎 → 调度核心 → 管理端。
所有组件都通过构造参数注入，测试可替换时钟、调度器与通知网关。
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .config.settings import Settings, get_settings
from .events.bus import EventBus
from .models.queue_entry import DatabaseManager
from .notifications.gateway import LoggingNotificationGateway, NotificationGateway
from .notifications.notifier import Notifier
from .scheduling.admin import AdminService
from .scheduling.scheduler import SchedulerCore
from .scheduling.view import QueueView
from .store.repositories import EntryRepository, UserDirectory
from .timers.clock import Clock, SystemClock
from .timers.engine import TimerEngine
from .timers.registry import TimerRegistry

logger = logging.getLogger("evqueue.runtime")


class QueueRuntime:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        scheduler: Optional[Any] = None,
        gateway: Optional[NotificationGateway] = None,
        db_manager: Optional[DatabaseManager] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

        storage = self.settings.storage
        self.db = db_manager or DatabaseManager(storage.db_path, echo=storage.echo_sql)
        self.repository = EntryRepository(self.db)
        self.directory = UserDirectory(self.db)

        self.view = QueueView(
            self.repository, self.settings, directory=self.directory, clock=self.clock
        )
        self.bus = EventBus(
            self.view.snapshot,
            heartbeat_interval=self.settings.events.heartbeat_interval_seconds,
            max_pending_events=self.settings.events.max_pending_events,
            clock=self.clock,
        )
        self.notifier = Notifier(
            gateway
            or LoggingNotificationGateway(self.settings.notifications.sender_name),
            self.directory,
            self.settings.stations,
            enabled=self.settings.notifications.enabled,
        )

        self.lock = asyncio.Lock()
        self.registry = TimerRegistry(scheduler, timezone=self.settings.timers.timezone)
        self.timers = TimerEngine(
            self.repository,
            self.registry,
            self.bus,
            self.notifier,
            clock=self.clock,
            lock=self.lock,
            almost_complete_lead_minutes=self.settings.timers.almost_complete_lead_minutes,
        )
        self.core = SchedulerCore(
            self.repository,
            self.directory,
            self.timers,
            self.bus,
            self.notifier,
            self.view,
            self.settings,
            clock=self.clock,
            lock=self.lock,
        )
        self.admin = AdminService(self.core)
        self.started = False

    async def start(self) -> Dict[str, int]:
        """打开数据库、启动计时调度器并对账已有会话"""
        if self.started:
            return {}

        if self.db.db_path != ":memory:":
            Path(self.db.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db.open()
        logger.info("Database opened: %s", self.db.url)

        self.registry.start()
        summary = await self.timers.initialize_existing_timers()
        self.started = True
        logger.info(
            "Queue runtime started stations=%d rearmed=%d overtime=%d",
            self.settings.stations.count,
            summary.get("rearmed", 0),
            summary.get("overtime", 0),
        )
        return summary

    async def stop(self) -> None:
        self.registry.shutdown()
        await self.bus.close()
        await self.notifier.drain()
        self.db.close()
        self.started = False
        logger.info("Queue runtime stopped")
