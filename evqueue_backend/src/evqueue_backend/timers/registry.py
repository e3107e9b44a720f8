"""TimerRegistry: 按条目ID管理延时回调

封装 APScheduler（异步）：每个回调对应一个 DateTrigger 一次性任务，
任务 ID 由 make_timer_id 生成。注册表自身记录 entry_id -> {kind: job_id}，
取消时按条目批量移除，不依赖回调闭包被回收。
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from .types import TimerKind, make_timer_id

logger = logging.getLogger("evqueue.timers.registry")

TimerCallback = Callable[..., Awaitable[Any]]


class TimerRegistry:
    """计时任务注册表

    Attributes:
        scheduler: APScheduler 异步调度器实例（可注入替身用于测试）
    """

    def __init__(self, scheduler: Optional[Any] = None, timezone: str = "UTC"):
        """
        Args:
            scheduler: 兼容 APScheduler 接口的调度器，为 None 时创建 AsyncIOScheduler
            timezone: 调度器时区
        """
        self.scheduler = scheduler or AsyncIOScheduler(
            timezone=timezone,
            job_defaults={
                "coalesce": True,  # 多个待执行实例合并
                "max_instances": 1,  # 同一任务最多并发1
                "misfire_grace_time": None,  # 进程繁忙导致的延迟也必须执行
            },
        )
        self._jobs: Dict[int, Dict[TimerKind, str]] = {}

    def start(self) -> None:
        """启动调度器（幂等）"""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Timer registry started")

    def shutdown(self) -> None:
        """停止调度器并清空注册表，未触发的回调不会再执行"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Timer registry stopped")
        self._jobs.clear()

    def schedule(
        self,
        entry_id: int,
        kind: TimerKind,
        run_at: datetime,
        callback: TimerCallback,
        *args: Any,
    ) -> str:
        """安排一次性回调，同一条目同一类型的旧任务会被替换

        Returns:
            APScheduler job id
        """
        job_id = make_timer_id(entry_id, kind)
        self.scheduler.add_job(
            callback,
            trigger=DateTrigger(run_date=run_at),
            args=list(args),
            id=job_id,
            replace_existing=True,
        )
        self._jobs.setdefault(entry_id, {})[kind] = job_id
        logger.debug("已安排计时任务 job_id=%s run_at=%s", job_id, run_at.isoformat())
        return job_id

    def discard(self, entry_id: int, kind: TimerKind) -> None:
        """回调触发后移除记录（APScheduler 会自行删除已触发的 DateTrigger 任务）"""
        kinds = self._jobs.get(entry_id)
        if not kinds:
            return
        kinds.pop(kind, None)
        if not kinds:
            self._jobs.pop(entry_id, None)

    def cancel(self, entry_id: int, kind: Optional[TimerKind] = None) -> int:
        """取消条目的计时任务

        Args:
            entry_id: 条目ID
            kind: 只取消指定类型；为 None 时取消该条目的全部任务

        Returns:
            实际移除的任务数量
        """
        kinds = self._jobs.get(entry_id)
        if not kinds:
            return 0

        targets = [kind] if kind is not None else list(kinds)
        removed = 0
        for target in targets:
            job_id = kinds.pop(target, None)
            if job_id is None:
                continue
            try:
                self.scheduler.remove_job(job_id)
                removed += 1
            except JobLookupError:
                # 已触发或已被移除
                logger.debug("计时任务已不存在 job_id=%s", job_id)

        if not kinds:
            self._jobs.pop(entry_id, None)
        return removed

    def cancel_all(self) -> int:
        removed = 0
        for entry_id in list(self._jobs):
            removed += self.cancel(entry_id)
        return removed

    def pending(self, entry_id: int) -> Set[TimerKind]:
        return set(self._jobs.get(entry_id, {}))

    def entry_ids(self) -> Set[int]:
        return set(self._jobs)

    def __len__(self) -> int:
        return sum(len(kinds) for kinds in self._jobs.values())

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._jobs
