"""SchedulerCore: 全局排队与充电桩分配

所有用户共享一条 FIFO 队列，空闲充电桩按编号升序依次预留给队首的
未分配等待者。每个写操作都在共享锁内完成“读取 - 校验 - 写入 - 匹配 - 广播”，
与 TimerEngine 的回调互斥。

不变式：
- 每个用户最多一条 waiting/charging/overtime 条目
- 每个充电桩最多一条 charging/overtime 条目
- 每次操作结束后等待条目的 position 恰好为 1..n
- 条目不会从 charging/overtime 回到 waiting
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..config.settings import Settings
from ..errors import (
    AlreadyActive,
    AlreadyLast,
    CannotAbandonReservation,
    InvalidDuration,
    InvalidStation,
    NoActiveSession,
    NotFirstInLine,
    NotInQueue,
    StationOccupied,
    UnknownUser,
)
from ..events.bus import EventBus, EventType
from ..models.entry import ACTIVE_STATUSES, OPEN_STATUSES, Entry, EntryStatus, UNASSIGNED_STATION
from ..notifications.notifier import Notifier
from ..store.repositories import EntryRepository, UserDirectory
from ..timers.clock import Clock, SystemClock
from ..timers.engine import TimerEngine
from .matching import dense_positions, pair_stations, rank_stations
from .view import QueueView

logger = logging.getLogger("evqueue.scheduler")

Assignment = Tuple[int, int]


class SchedulerCore:
    """排队调度核心

    Attributes:
        lock: 与 TimerEngine 共享的状态锁
    """

    def __init__(
        self,
        repository: EntryRepository,
        directory: UserDirectory,
        timers: TimerEngine,
        bus: EventBus,
        notifier: Notifier,
        view: QueueView,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.repository = repository
        self.directory = directory
        self.timers = timers
        self.bus = bus
        self.notifier = notifier
        self.view = view
        self.settings = settings
        self.clock = clock or SystemClock()
        self.lock = lock or timers.lock

        # 不允许超时的会话到时后由计时引擎回调结束
        self.timers.set_completion_handler(self.complete_charging)

    @property
    def station_ids(self) -> List[int]:
        return self.settings.stations.station_ids()

    # ------------------------------------------------------------------ 排队

    async def add_to_queue(
        self, user_id: int, requested_station_id: Optional[int] = None
    ) -> Entry:
        """加入全局队列

        requested_station_id 仅作为偏好记录，实际分配由队列顺序决定。
        """
        if requested_station_id not in (None, UNASSIGNED_STATION):
            self.check_station(requested_station_id)

        async with self.lock:
            if not self.directory.exists(user_id):
                raise UnknownUser(user_id)

            existing = self.repository.find_one(user_id=user_id, status=OPEN_STATUSES)
            if existing is not None:
                raise AlreadyActive(user_id, existing.status.value)

            position = self.repository.count(status=EntryStatus.Waiting) + 1
            entry = self.repository.create(user_id=user_id, position=position)
            logger.info(
                "[queue] 用户入队 user=%s position=%d preferred_station=%s",
                user_id,
                position,
                requested_station_id,
            )

            self._match()
            self.bus.publish_queue_update()
            return self.repository.get(entry.id)

    async def remove_from_queue(self, user_id: int) -> Entry:
        """离开队列（只针对等待中的条目）"""
        async with self.lock:
            entry = self.repository.find_one(user_id=user_id, status=EntryStatus.Waiting)
            if entry is None:
                raise NotInQueue(user_id)

            self.repository.delete(entry.id)
            self._renumber()
            logger.info(
                "[queue] 用户离队 user=%s position=%d station=%s",
                user_id,
                entry.position,
                entry.station_id,
            )

            # 队首离开或释放了预留，需要重新分配
            if entry.position == 1 or entry.is_reserved:
                self._match()
            self.bus.publish_queue_update()
            return entry

    async def move_back_one_spot(self, user_id: int) -> Entry:
        """与身后一位交换位置

        若自己持有预留，预留随之交给身后的人（对方原有的预留交还给自己）。
        持有预留但身后没有未分配的等待者时不允许后退。
        """
        async with self.lock:
            entry = self.repository.find_one(user_id=user_id, status=EntryStatus.Waiting)
            if entry is None:
                raise NotInQueue(user_id)

            waiting = self.repository.find_waiting()
            behind = next((e for e in waiting if e.position == entry.position + 1), None)
            if behind is None:
                raise AlreadyLast(user_id)

            if entry.is_reserved and not any(
                e.position > entry.position and not e.is_reserved for e in waiting
            ):
                raise CannotAbandonReservation(user_id, entry.station_id)

            mover_station = entry.station_id
            behind_station = behind.station_id
            if entry.is_reserved:
                mover_station, behind_station = behind.station_id, entry.station_id

            moved = self.repository.update(
                entry.id, position=behind.position, station_id=mover_station
            )
            promoted = self.repository.update(
                behind.id, position=entry.position, station_id=behind_station
            )
            logger.info(
                "[queue] 用户后退一位 user=%s %d->%d station %s->%s",
                user_id,
                entry.position,
                moved.position,
                entry.station_id,
                moved.station_id,
            )

            if promoted.station_id and promoted.station_id != behind.station_id:
                self.notifier.station_ready(promoted)
            # 换回来的预留也要通知，原来的桩已经归别人
            if moved.station_id and moved.station_id != entry.station_id:
                self.notifier.station_ready(moved)

            if entry.position == 1:
                self._match()
            self.bus.publish_queue_update()
            return moved

    # ------------------------------------------------------------------ 充电

    async def start_charging(
        self,
        user_id: int,
        station_id: int,
        duration_minutes: int,
        allow_overtime: bool = True,
    ) -> Entry:
        """队首用户在指定充电桩开始充电"""
        self.check_station(station_id)
        self.check_duration(duration_minutes)

        async with self.lock:
            entry = self.repository.find_one(user_id=user_id, status=EntryStatus.Waiting)
            if entry is None:
                raise NotInQueue(user_id)
            if entry.position != 1:
                raise NotFirstInLine(user_id, entry.position)
            if self.repository.find_one(station_id=station_id, status=ACTIVE_STATUSES):
                raise StationOccupied(station_id)

            # 该桩预留给了别人：对方改拿开始者原来的预留（可能为 0）
            holder = self.repository.find_one(
                station_id=station_id, status=EntryStatus.Waiting
            )
            if holder is not None and holder.id != entry.id:
                swapped = self.repository.update(holder.id, station_id=entry.station_id)
                logger.info(
                    "[queue] 预留转移 entry=%s station %s->%s",
                    holder.id,
                    station_id,
                    swapped.station_id,
                )
                if swapped.station_id:
                    self.notifier.station_ready(swapped)

            now = self.clock.now()
            started = self.repository.update(
                entry.id,
                status=EntryStatus.Charging,
                station_id=station_id,
                position=0,
                duration_minutes=duration_minutes,
                charging_started_at=now,
                estimated_end_time=now + timedelta(minutes=duration_minutes),
                allow_overtime=allow_overtime,
            )
            self._renumber()
            logger.info(
                "[charging] 开始充电 user=%s entry=%s station=%s duration=%dmin",
                user_id,
                started.id,
                station_id,
                duration_minutes,
            )

            self.timers.start_timer(started.id, duration_minutes, allow_overtime, started_at=now)
            self._match()
            self.bus.publish_queue_update()
            return started

    async def start_direct_session(
        self,
        user_id: Optional[int],
        station_id: int,
        duration_minutes: int,
        allow_overtime: bool = True,
        *,
        new_user: Optional[Tuple[str, Optional[str]]] = None,
    ) -> Entry:
        """不经过队列直接开始会话（管理端使用）

        user_id 为 None 时按 new_user=(email, name) 建档，且只在所有校验通过后才创建，
        失败的请求不会留下用户记录。
        """
        self.check_station(station_id)
        self.check_duration(duration_minutes)
        if user_id is None and new_user is None:
            raise UnknownUser(user_id)

        async with self.lock:
            if user_id is not None:
                existing = self.repository.find_one(user_id=user_id, status=OPEN_STATUSES)
                if existing is not None:
                    raise AlreadyActive(user_id, existing.status.value)
            if self.repository.find_one(station_id=station_id, status=ACTIVE_STATUSES):
                raise StationOccupied(station_id)

            if user_id is None:
                email, name = new_user
                user_id = self.directory.create_user(email, name).id

            holder = self.repository.find_one(
                station_id=station_id, status=EntryStatus.Waiting
            )
            if holder is not None:
                self.repository.update(holder.id, station_id=UNASSIGNED_STATION)

            now = self.clock.now()
            entry = self.repository.create(
                user_id=user_id,
                position=0,
                station_id=station_id,
                status=EntryStatus.Charging,
                duration_minutes=duration_minutes,
                charging_started_at=now,
                estimated_end_time=now + timedelta(minutes=duration_minutes),
                allow_overtime=allow_overtime,
            )
            logger.info(
                "[charging] 直接开始会话 user=%s entry=%s station=%s allow_overtime=%s",
                user_id,
                entry.id,
                station_id,
                allow_overtime,
            )

            self.timers.start_timer(entry.id, duration_minutes, allow_overtime, started_at=now)
            if holder is not None:
                self._match()
            self.bus.publish_queue_update()
            return entry

    async def complete_charging(self, entry_id: int) -> Entry:
        """结束充电会话并释放充电桩，返回被删除的条目"""
        async with self.lock:
            entry = self.repository.find_one(entry_id=entry_id)
            if entry is None or not entry.is_active:
                raise NoActiveSession(entry_id=entry_id)

            self.timers.clear_timer(entry_id)
            self.repository.delete(entry_id)

            duration = 0
            if entry.charging_started_at is not None:
                elapsed = (self.clock.now() - entry.charging_started_at).total_seconds()
                duration = max(0, math.floor(elapsed / 60))

            logger.info(
                "[charging] 充电结束 entry=%s user=%s station=%s status=%s duration=%dmin",
                entry_id,
                entry.user_id,
                entry.station_id,
                entry.status.value,
                duration,
            )

            self.bus.publish_event(EventType.Completed, entryId=entry_id)
            self.notifier.complete(entry, duration)
            self._match()
            self.bus.publish_queue_update()
            return entry

    async def complete_charging_for_user(self, user_id: int) -> Entry:
        entry = self.repository.find_one(user_id=user_id, status=ACTIVE_STATUSES)
        if entry is None:
            raise NoActiveSession(user_id=user_id)
        return await self.complete_charging(entry.id)

    # ------------------------------------------------------------------ 匹配

    async def assign_stations_to_waiting_users(self) -> List[Assignment]:
        """执行一次匹配，返回新产生的 (entry_id, station_id)"""
        async with self.lock:
            assignments = self._match()
            if assignments:
                self.bus.publish_queue_update()
            return assignments

    async def renumber_waiting(self) -> int:
        """重新整理等待序号，返回被修改的条目数"""
        async with self.lock:
            changed = self._renumber()
            if changed:
                self.bus.publish_queue_update()
            return changed

    def find_best_station(self) -> int:
        entries = self.repository.find_many()
        return rank_stations(self.station_ids, entries)[0]

    # ------------------------------------------------------------------ 查询

    def get_queue(self) -> List[Dict[str, Any]]:
        return self.view.snapshot()

    def get_queue_with_estimates(self) -> List[Dict[str, Any]]:
        return self.view.snapshot_with_estimates()

    def find_entry_for_user(self, user_id: int) -> Optional[Entry]:
        return self.repository.find_one(user_id=user_id, status=OPEN_STATUSES)

    # ------------------------------------------------------------------ 内部（需持有锁）

    def _match(self) -> List[Assignment]:
        pairs = pair_stations(self.station_ids, self.repository.find_many())
        assignments: List[Assignment] = []
        for entry, station_id in pairs:
            reserved = self.repository.update(entry.id, station_id=station_id)
            assignments.append((entry.id, station_id))
            self.notifier.station_ready(reserved)
            logger.info(
                "[match] 预留充电桩 entry=%s user=%s position=%d station=%s",
                entry.id,
                entry.user_id,
                entry.position,
                station_id,
            )
        return assignments

    def _renumber(self) -> int:
        changes = dense_positions(self.repository.find_waiting())
        for entry, position in changes:
            self.repository.update(entry.id, position=position)
        return len(changes)

    def check_station(self, station_id: Any) -> None:
        if not self.settings.stations.is_valid(station_id):
            raise InvalidStation(station_id, self.settings.stations.count)

    def check_duration(self, duration_minutes: Any) -> None:
        limit = self.settings.timers.max_duration_minutes
        if (
            not isinstance(duration_minutes, int)
            or isinstance(duration_minutes, bool)
            or duration_minutes <= 0
            or duration_minutes > limit
        ):
            raise InvalidDuration(duration_minutes, limit)
