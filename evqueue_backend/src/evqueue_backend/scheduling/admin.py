"""管理端操作

只是 SchedulerCore 的薄封装，所有状态修改都经过核心或在共享锁内完成。
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from ..errors import EntryNotFound
from ..models.entry import Entry, EntryStatus
from .scheduler import SchedulerCore

logger = logging.getLogger("evqueue.scheduler.admin")


class AdminService:
    def __init__(self, core: SchedulerCore):
        self.core = core
        self.repository = core.repository
        self.directory = core.directory

    async def remove_entry(self, entry_id: int) -> Entry:
        """移除任意条目：充电中的结束会话，等待中的离队"""
        entry = self.repository.find_one(entry_id=entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        if entry.is_active:
            return await self.core.complete_charging(entry_id)
        return await self.core.remove_from_queue(entry.user_id)

    async def force_complete(self, entry_id: int) -> Entry:
        return await self.core.complete_charging(entry_id)

    async def add_charging(
        self,
        station_id: int,
        duration_minutes: int,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Entry:
        """为线下用户直接开启会话

        已注册邮箱的用户允许超时；新邮箱或匿名用户会自动建档，但到时即自动结束。
        建档在核心的校验之后进行，会话没能开始时不会留下用户。
        """
        user = self.directory.find_by_email(email) if email else None
        new_user = None
        if user is None:
            if email:
                new_user = (email, name)
            else:
                anon_email = f"anon_{uuid.uuid4().hex[:12]}@placeholder.local"
                new_user = (anon_email, name or "Guest")

        entry = await self.core.start_direct_session(
            user.id if user else None,
            station_id,
            duration_minutes,
            allow_overtime=user is not None,
            new_user=new_user,
        )
        logger.info(
            "[admin] 添加充电会话 entry=%s user=%s station=%s allow_overtime=%s",
            entry.id,
            entry.user_id,
            station_id,
            entry.allow_overtime,
        )
        return entry

    async def clear_queue(self) -> int:
        """取消所有计时并删除全部条目"""
        async with self.core.lock:
            cancelled = self.core.timers.registry.cancel_all()
            removed = self.repository.delete_many()
            logger.warning(
                "[admin] 清空队列 removed=%d cancelled_timers=%d", removed, cancelled
            )
            self.core.bus.publish_queue_update()
            return removed

    async def reset_positions(self) -> int:
        return await self.core.renumber_waiting()

    def status(self) -> Dict[str, Any]:
        entries = self.repository.find_many()
        stations = []
        for station_id in self.core.station_ids:
            on_station = [e for e in entries if e.station_id == station_id]
            occupant = next((e for e in on_station if e.is_active), None)
            stations.append(
                {
                    "stationId": station_id,
                    "name": self.core.settings.stations.name_for(station_id),
                    "reserved": sum(1 for e in on_station if e.is_reserved),
                    "charging": sum(
                        1 for e in on_station if e.status == EntryStatus.Charging
                    ),
                    "overtime": sum(
                        1 for e in on_station if e.status == EntryStatus.Overtime
                    ),
                    "occupantEntryId": occupant.id if occupant else None,
                }
            )

        return {
            "totalEntries": len(entries),
            "waiting": sum(1 for e in entries if e.is_waiting),
            "charging": sum(1 for e in entries if e.status == EntryStatus.Charging),
            "overtime": sum(1 for e in entries if e.status == EntryStatus.Overtime),
            "pendingTimers": len(self.core.timers.registry),
            "subscribers": self.core.bus.subscriber_count,
            "stations": stations,
        }
