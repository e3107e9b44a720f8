"""QueueView: 队列快照与预计时间

快照顺序：充电中/超时的条目在前（按充电桩编号），等待条目按队列序号在后。
等待条目的预计开始时间使用简单估算：
- 前 free 个等待者（free = 当前空闲充电桩数）可以立即开始
- 其余按 “最早结束的充电会话 + (k-1) * 默认时长” 估算
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..config.settings import Settings
from ..models.entry import Entry
from ..notifications.notifier import Directory
from ..store.repositories import EntryRepository
from ..timers.clock import Clock, SystemClock
from .matching import free_stations

logger = logging.getLogger("evqueue.scheduler.view")


class QueueView:
    def __init__(
        self,
        repository: EntryRepository,
        settings: Settings,
        *,
        directory: Optional[Directory] = None,
        clock: Optional[Clock] = None,
    ):
        self.repository = repository
        self.settings = settings
        self.directory = directory
        self.clock = clock or SystemClock()

    @property
    def default_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.timers.default_duration_minutes)

    def ordered(self) -> List[Entry]:
        """按展示顺序返回所有未完成条目"""
        entries = self.repository.find_many()
        active = sorted(
            (e for e in entries if e.is_active), key=lambda e: (e.station_id, e.id)
        )
        waiting = sorted(
            (e for e in entries if e.is_waiting), key=lambda e: (e.position, e.id)
        )
        return active + waiting

    def snapshot(self) -> List[Dict[str, Any]]:
        """完整队列快照（用于 initial_state / queue_update）"""
        return [self._describe(e) for e in self.ordered()]

    def snapshot_with_estimates(self) -> List[Dict[str, Any]]:
        entries = self.ordered()
        now = self.clock.now()

        active = [e for e in entries if e.is_active]
        waiting = [e for e in entries if e.is_waiting]
        free_count = len(free_stations(self.settings.stations.station_ids(), active))

        end_times = sorted(self._end_time(e, now) for e in active)
        earliest_end = end_times[0] if end_times else now

        result: List[Dict[str, Any]] = []
        for entry in active:
            item = self._describe(entry)
            end_time = self._end_time(entry, now)
            delta = (end_time - now).total_seconds()
            item["remainingSeconds"] = max(0, math.ceil(delta))
            item["overtimeSeconds"] = max(0, math.ceil(-delta))
            result.append(item)

        for index, entry in enumerate(waiting):
            if index < free_count:
                start_time = now
            else:
                behind = index - free_count
                start_time = earliest_end + behind * self.default_duration
            duration = (
                timedelta(minutes=entry.duration_minutes)
                if entry.duration_minutes
                else self.default_duration
            )
            item = self._describe(entry)
            item["estimatedStartTime"] = start_time.isoformat()
            item["estimatedWaitSeconds"] = max(
                0, math.ceil((start_time - now).total_seconds())
            )
            item["estimatedEndTime"] = (start_time + duration).isoformat()
            result.append(item)

        return result

    def _end_time(self, entry: Entry, now: datetime) -> datetime:
        # 缺少结束时间的会话按默认时长估算
        return entry.estimated_end_time or (now + self.default_duration)

    def _describe(self, entry: Entry) -> Dict[str, Any]:
        item = entry.to_dict()
        item["stationName"] = (
            self.settings.stations.name_for(entry.station_id)
            if entry.station_id
            else None
        )
        if self.directory is not None:
            info = self.directory.resolve(entry.user_id)
            item["userName"] = info.name if info is not None else None
        return item
