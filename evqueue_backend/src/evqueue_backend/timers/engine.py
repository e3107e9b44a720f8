"""TimerEngine: 充电会话计时引擎

每个充电中的条目最多有两个延时回调：
1. 结束前 lead 分钟（默认 2 分钟，仅当时长大于 lead）发送“即将完成”提醒，不改变状态
2. 到时后：若仍为 charging，允许超时则转为 overtime 并通知；不允许超时则调用
   完成处理器（SchedulerCore.complete_charging）直接结束，不会出现 overtime 状态

回调与用户请求并发执行，因此每个回调在持有共享锁的情况下重新读取条目、
确认 status == charging 后才修改。

计时任务只存在于进程内存中，进程重启后由 initialize_existing_timers 根据
数据库中的 estimated_end_time 进行对账。
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import EntryNotFound, NoActiveSession
from ..events.bus import EventBus, EventType
from ..models.entry import ACTIVE_STATUSES, Entry, EntryStatus
from ..notifications.notifier import Notifier
from ..store.repositories import EntryRepository
from .clock import Clock, SystemClock
from .registry import TimerRegistry
from .types import TimerKind

logger = logging.getLogger("evqueue.timers")

CompletionHandler = Callable[[int], Awaitable[Any]]


class TimerEngine:
    """会话计时引擎

    Attributes:
        lock: 与 SchedulerCore 共享的状态锁
    """

    def __init__(
        self,
        repository: EntryRepository,
        registry: TimerRegistry,
        bus: EventBus,
        notifier: Notifier,
        *,
        clock: Optional[Clock] = None,
        lock: Optional[asyncio.Lock] = None,
        almost_complete_lead_minutes: int = 2,
    ):
        self.repository = repository
        self.registry = registry
        self.bus = bus
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.lock = lock or asyncio.Lock()
        self.lead_minutes = almost_complete_lead_minutes
        self._completion_handler: Optional[CompletionHandler] = None

    def set_completion_handler(self, handler: CompletionHandler) -> None:
        """注册不允许超时的会话到时后的完成处理器"""
        self._completion_handler = handler

    # ------------------------------------------------------------------ 公共接口

    def start_timer(
        self,
        entry_id: int,
        duration_minutes: int,
        allow_overtime: bool = True,
        started_at: Optional[datetime] = None,
    ) -> datetime:
        """为刚开始充电的条目安排计时回调并广播 timer_started

        Returns:
            预计结束时间
        """
        started = started_at or self.clock.now()
        end_time = started + timedelta(minutes=duration_minutes)

        self._arm(entry_id, end_time, duration_minutes, allow_overtime)

        self.bus.publish_event(
            EventType.TimerStarted,
            entryId=entry_id,
            estimatedEndTime=end_time.isoformat(),
            durationMinutes=duration_minutes,
        )
        logger.info(
            "[timer] 开始计时 entry=%s duration=%dmin end=%s allow_overtime=%s",
            entry_id,
            duration_minutes,
            end_time.isoformat(),
            allow_overtime,
        )
        return end_time

    def clear_timer(self, entry_id: int) -> int:
        """取消条目的全部待执行回调"""
        removed = self.registry.cancel(entry_id)
        if removed:
            logger.debug("[timer] 已取消计时 entry=%s count=%d", entry_id, removed)
        return removed

    def get_remaining_seconds(self, entry_id: int) -> int:
        """剩余秒数，超时后为负数，不做截断"""
        entry = self.repository.find_one(entry_id=entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        if entry.estimated_end_time is None:
            raise NoActiveSession(entry_id=entry_id)
        remaining = (entry.estimated_end_time - self.clock.now()).total_seconds()
        return math.ceil(remaining)

    async def initialize_existing_timers(self) -> Dict[str, int]:
        """进程启动时对账（可重复执行）

        - charging 且已过预计结束时间：立即转为 overtime 并广播
          （持久化的 allow_overtime 为 False 时改为自动结束）
        - charging 且尚有剩余：按剩余时间重新安排到时回调，
          提醒时间点已过则不再安排提醒
        - overtime：重新广播当前状态，让晚到的订阅者收敛
        """
        summary = {
            "scanned": 0,
            "rearmed": 0,
            "overtime": 0,
            "republished": 0,
            "auto_completed": 0,
            "skipped": 0,
        }
        to_complete: List[int] = []

        async with self.lock:
            entries = self.repository.find_many(status=ACTIVE_STATUSES)
            now = self.clock.now()
            summary["scanned"] = len(entries)

            for entry in entries:
                end_time = self._resolve_end_time(entry)

                if entry.status == EntryStatus.Overtime:
                    self.clear_timer(entry.id)
                    self.bus.publish_event(
                        EventType.Overtime,
                        entryId=entry.id,
                        estimatedEndTime=end_time.isoformat() if end_time else None,
                    )
                    summary["republished"] += 1
                    continue

                if end_time is None:
                    logger.warning("[timer] 充电条目缺少结束时间，跳过 entry=%s", entry.id)
                    summary["skipped"] += 1
                    continue

                if end_time <= now:
                    self.clear_timer(entry.id)
                    if entry.allow_overtime:
                        self._mark_overtime(entry, publish_queue=False)
                        summary["overtime"] += 1
                    else:
                        to_complete.append(entry.id)
                    continue

                self._arm(entry.id, end_time, entry.duration_minutes, entry.allow_overtime)
                summary["rearmed"] += 1

            self.bus.publish_queue_update()

        for entry_id in to_complete:
            if await self._auto_complete(entry_id):
                summary["auto_completed"] += 1

        logger.info("[timer] 计时对账完成 %s pending=%d", summary, len(self.registry))
        return summary

    # ------------------------------------------------------------------ 回调

    async def _on_almost_complete(self, entry_id: int) -> None:
        self.registry.discard(entry_id, TimerKind.AlmostComplete)
        try:
            async with self.lock:
                entry = self.repository.find_one(entry_id=entry_id)
                if entry is None or entry.status != EntryStatus.Charging:
                    logger.debug("[timer] 提醒时条目已不在充电 entry=%s", entry_id)
                    return

                self.bus.publish_event(
                    EventType.AlmostComplete,
                    entryId=entry_id,
                    minutesRemaining=self.lead_minutes,
                )
                self.notifier.almost_complete(entry, self.lead_minutes)
                logger.info("[timer] 即将完成提醒 entry=%s", entry_id)
        except Exception as e:
            logger.exception("[timer] 即将完成回调失败 entry=%s: %s", entry_id, e)

    async def _on_expired(self, entry_id: int, allow_overtime: bool = True) -> None:
        self.registry.discard(entry_id, TimerKind.Expiry)
        try:
            async with self.lock:
                entry = self.repository.find_one(entry_id=entry_id)
                if entry is None or entry.status != EntryStatus.Charging:
                    # 已被用户提前结束
                    logger.debug("[timer] 到时时条目已不在充电 entry=%s", entry_id)
                    return

                if allow_overtime:
                    self._mark_overtime(entry)
                    return

            logger.info("[timer] 不允许超时，自动结束 entry=%s", entry_id)
            await self._auto_complete(entry_id)
        except Exception as e:
            logger.exception("[timer] 到时回调失败 entry=%s: %s", entry_id, e)

    # ------------------------------------------------------------------ 内部

    def _arm(
        self,
        entry_id: int,
        end_time: datetime,
        duration_minutes: Optional[int],
        allow_overtime: bool,
    ) -> None:
        self.clear_timer(entry_id)
        now = self.clock.now()

        if duration_minutes is not None and duration_minutes > self.lead_minutes:
            remind_at = end_time - timedelta(minutes=self.lead_minutes)
            if remind_at > now:
                self.registry.schedule(
                    entry_id,
                    TimerKind.AlmostComplete,
                    remind_at,
                    self._on_almost_complete,
                    entry_id,
                )

        self.registry.schedule(
            entry_id,
            TimerKind.Expiry,
            end_time,
            self._on_expired,
            entry_id,
            allow_overtime,
        )

    def _resolve_end_time(self, entry: Entry) -> Optional[datetime]:
        if entry.estimated_end_time is not None:
            return entry.estimated_end_time
        if entry.charging_started_at is None or not entry.duration_minutes:
            return None
        end_time = entry.charging_started_at + timedelta(minutes=entry.duration_minutes)
        self.repository.update(entry.id, estimated_end_time=end_time)
        return end_time

    def _mark_overtime(self, entry: Entry, *, publish_queue: bool = True) -> Entry:
        updated = self.repository.update(entry.id, status=EntryStatus.Overtime)
        end_time = updated.estimated_end_time

        self.bus.publish_event(
            EventType.Overtime,
            entryId=entry.id,
            estimatedEndTime=end_time.isoformat() if end_time else None,
        )
        if publish_queue:
            self.bus.publish_queue_update()

        overtime_minutes = 0
        if end_time is not None:
            overtime_minutes = max(
                0, int((self.clock.now() - end_time).total_seconds() // 60)
            )
        self.notifier.expired(updated, overtime_minutes)

        logger.info("[timer] 条目进入超时 entry=%s station=%s", entry.id, entry.station_id)
        return updated

    async def _auto_complete(self, entry_id: int) -> bool:
        if self._completion_handler is None:
            logger.error("[timer] 未注册完成处理器，无法自动结束 entry=%s", entry_id)
            return False
        try:
            await self._completion_handler(entry_id)
            return True
        except NoActiveSession:
            logger.info("[timer] 自动结束时会话已结束 entry=%s", entry_id)
            return False
