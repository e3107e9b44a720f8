from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import pytest
from apscheduler.jobstores.base import JobLookupError

from evqueue_backend.config.settings import Settings, StationConfig, StorageConfig
from evqueue_backend.container import QueueRuntime
from evqueue_backend.events.bus import ChannelClosed
from evqueue_backend.models.entry import UserInfo
from evqueue_backend.notifications.gateway import NotificationGateway


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)


class FakeScheduler:
    """手动推进的 APScheduler 替身，只实现 TimerRegistry 用到的接口"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.running = False
        self.jobs: Dict[str, Tuple[datetime, Any, List[Any]]] = {}

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        self.running = False
        self.jobs.clear()

    def add_job(self, func, trigger=None, args=None, id=None, replace_existing=False):
        self.jobs[id] = (trigger.run_date, func, list(args or []))

    def remove_job(self, job_id: str) -> None:
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    async def advance(self, **delta) -> None:
        """推进时钟，并按时间顺序执行期间到期的任务"""
        target = self.clock.now() + timedelta(**delta)
        while True:
            due = sorted(
                (run_at, job_id)
                for job_id, (run_at, _, _) in self.jobs.items()
                if run_at <= target
            )
            if not due:
                break
            run_at, job_id = due[0]
            _, func, args = self.jobs.pop(job_id)
            if run_at > self.clock.current:
                self.clock.current = run_at
            await func(*args)
        self.clock.current = target


class RecordingGateway(NotificationGateway):
    def __init__(self):
        self.calls: List[Tuple[str, int, str, Any]] = []

    async def send_station_ready(self, recipient: UserInfo, station_name: str) -> None:
        self.calls.append(("station_ready", recipient.id, station_name, None))

    async def send_almost_complete(self, recipient, station_name, minutes_remaining):
        self.calls.append(("almost_complete", recipient.id, station_name, minutes_remaining))

    async def send_expired(self, recipient, station_name, overtime_minutes):
        self.calls.append(("expired", recipient.id, station_name, overtime_minutes))

    async def send_complete(self, recipient, station_name, duration_minutes):
        self.calls.append(("complete", recipient.id, station_name, duration_minutes))

    def kinds_for(self, user_id: int) -> List[str]:
        return [kind for kind, uid, _, _ in self.calls if uid == user_id]


class RecordingChannel:
    def __init__(self, fail: bool = False):
        self.events: List[Dict[str, Any]] = []
        self.closed = False
        self.fail = fail

    def write(self, data: str) -> None:
        if self.fail or self.closed:
            raise ChannelClosed("recording channel closed")
        assert data.endswith("\n")
        self.events.append(json.loads(data))

    def close(self) -> None:
        self.closed = True

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in (
        "EVQUEUE_DB_PATH",
        "EVQUEUE_STATION_COUNT",
        "EVQUEUE_HEARTBEAT_INTERVAL",
        "EVQUEUE_LOG_LEVEL",
        "EVQUEUE_TIMEZONE",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def station_count() -> int:
    return 8


@pytest.fixture
def settings(station_count) -> Settings:
    return Settings(
        stations=StationConfig(count=station_count),
        storage=StorageConfig(db_path=":memory:"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_scheduler(clock) -> FakeScheduler:
    return FakeScheduler(clock)


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def runtime(settings, clock, fake_scheduler, gateway) -> QueueRuntime:
    return QueueRuntime(settings, clock=clock, scheduler=fake_scheduler, gateway=gateway)


@pytest.fixture
def run(runtime):
    """在新的事件循环中启动运行时、创建用户并执行场景

    场景签名: async def scenario(rt, users) -> Any
    """

    def _run(scenario, users: int = 0):
        async def main():
            await runtime.start()
            try:
                user_ids = [
                    runtime.directory.create_user(f"user{i}@example.com", f"User {i}").id
                    for i in range(1, users + 1)
                ]
                return await scenario(runtime, user_ids)
            finally:
                await runtime.notifier.drain()
                await runtime.stop()

        return asyncio.run(main())

    return _run


def assert_invariants(rt: QueueRuntime) -> None:
    entries = rt.repository.find_many()

    users = [e.user_id for e in entries]
    assert len(users) == len(set(users)), "one open entry per user"

    occupied = [e.station_id for e in entries if e.is_active]
    assert len(occupied) == len(set(occupied)), "one occupant per station"
    assert all(s >= 1 for s in occupied)

    reserved = [e.station_id for e in entries if e.is_reserved]
    assert len(reserved) == len(set(reserved))
    assert not set(reserved) & set(occupied)

    positions = sorted(e.position for e in entries if e.is_waiting)
    assert positions == list(range(1, len(positions) + 1)), "dense positions"
    assert all(e.position == 0 for e in entries if e.is_active)


@pytest.fixture
def check_invariants():
    return assert_invariants
