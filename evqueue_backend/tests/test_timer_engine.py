from __future__ import annotations

from datetime import timedelta

import pytest

from evqueue_backend.errors import EntryNotFound, NoActiveSession
from evqueue_backend.models.entry import EntryStatus
from evqueue_backend.timers.types import TimerKind

from conftest import RecordingChannel, RecordingGateway


async def _start_session(rt, user_id, duration, allow_overtime=True):
    await rt.core.add_to_queue(user_id)
    return await rt.core.start_charging(user_id, 1, duration, allow_overtime)


def test_overtime_session_lifecycle(run, fake_scheduler, gateway):
    async def scenario(rt, users):
        channel = RecordingChannel()
        await rt.bus.subscribe(channel)
        entry = await _start_session(rt, users[0], 5)

        started = channel.of_type("timer_started")
        assert started[-1]["entryId"] == entry.id
        assert started[-1]["durationMinutes"] == 5

        await fake_scheduler.advance(minutes=3)
        assert len(channel.of_type("almost_complete")) == 1
        assert channel.of_type("almost_complete")[0]["minutesRemaining"] == 2
        assert rt.repository.get(entry.id).status == EntryStatus.Charging
        assert rt.timers.get_remaining_seconds(entry.id) == 120

        await fake_scheduler.advance(minutes=2)
        assert rt.repository.get(entry.id).status == EntryStatus.Overtime
        assert len(channel.of_type("overtime")) == 1
        assert len(channel.of_type("almost_complete")) == 1
        assert rt.timers.get_remaining_seconds(entry.id) == 0

        await fake_scheduler.advance(seconds=30)
        assert rt.timers.get_remaining_seconds(entry.id) == -30
        await fake_scheduler.advance(minutes=1)
        assert rt.timers.get_remaining_seconds(entry.id) == -90

        await rt.notifier.drain()
        assert gateway.kinds_for(users[0]) == [
            "station_ready",
            "almost_complete",
            "expired",
        ]

        await rt.core.complete_charging(entry.id)
        assert channel.of_type("completed")[-1]["entryId"] == entry.id

    run(scenario, users=1)


class UnreachableGateway(RecordingGateway):
    async def send_station_ready(self, recipient, station_name):
        raise ConnectionError("smtp down")

    async def send_expired(self, recipient, station_name, overtime_minutes):
        raise ConnectionError("smtp down")


def test_failed_notifications_do_not_block_state_changes(run, fake_scheduler):
    async def scenario(rt, users):
        rt.notifier.gateway = UnreachableGateway()
        channel = RecordingChannel()
        await rt.bus.subscribe(channel)

        entry = await _start_session(rt, users[0], 5)
        await fake_scheduler.advance(minutes=5)

        assert rt.repository.get(entry.id).status == EntryStatus.Overtime
        assert len(channel.of_type("overtime")) == 1

        await rt.notifier.drain()
        assert rt.notifier.failed_count == 2
        assert rt.notifier.sent_count == 1
        assert rt.notifier.gateway.kinds_for(users[0]) == ["almost_complete"]

        await rt.core.complete_charging(entry.id)
        assert rt.repository.find_one(entry_id=entry.id) is None

    run(scenario, users=1)


def test_session_without_overtime_is_auto_completed(run, fake_scheduler):
    async def scenario(rt, users):
        channel = RecordingChannel()
        await rt.bus.subscribe(channel)
        entry = await _start_session(rt, users[0], 5, allow_overtime=False)

        await fake_scheduler.advance(minutes=5)

        assert rt.repository.find_one(entry_id=entry.id) is None
        assert channel.of_type("overtime") == []
        assert [e["entryId"] for e in channel.of_type("completed")] == [entry.id]
        assert len(rt.registry) == 0

    run(scenario, users=1)


def test_completed_session_ignores_pending_callbacks(run, fake_scheduler):
    async def scenario(rt, users):
        channel = RecordingChannel()
        await rt.bus.subscribe(channel)
        entry = await _start_session(rt, users[0], 10)
        await rt.core.complete_charging(entry.id)

        # 直接调用回调，模拟取消前已经被调度的情况
        await rt.timers._on_almost_complete(entry.id)
        await rt.timers._on_expired(entry.id, True)
        await fake_scheduler.advance(minutes=15)

        assert channel.of_type("almost_complete") == []
        assert channel.of_type("overtime") == []

    run(scenario, users=1)


def test_short_session_skips_almost_complete(run, fake_scheduler):
    async def scenario(rt, users):
        entry = await _start_session(rt, users[0], 2)
        assert rt.registry.pending(entry.id) == {TimerKind.Expiry}

    run(scenario, users=1)


def test_remaining_seconds_errors(run):
    async def scenario(rt, users):
        with pytest.raises(EntryNotFound):
            rt.timers.get_remaining_seconds(404)

        waiting = await rt.core.add_to_queue(users[0])
        with pytest.raises(NoActiveSession):
            rt.timers.get_remaining_seconds(waiting.id)

    run(scenario, users=1)


def test_reconciliation_after_restart(run, clock, fake_scheduler):
    async def scenario(rt, users):
        now = clock.now()
        repo = rt.repository

        def seed(user_id, status, minutes_left, duration=30, allow_overtime=True):
            end = now + timedelta(minutes=minutes_left)
            return repo.create(
                user_id=user_id,
                position=0,
                station_id=user_id,
                status=status,
                duration_minutes=duration,
                charging_started_at=end - timedelta(minutes=duration),
                estimated_end_time=end,
                allow_overtime=allow_overtime,
            )

        past_due = seed(users[0], EntryStatus.Charging, -5)
        running = seed(users[1], EntryStatus.Charging, 10)
        nearly_done = seed(users[2], EntryStatus.Charging, 1)
        overtime = seed(users[3], EntryStatus.Overtime, -20)
        strict = seed(users[4], EntryStatus.Charging, -1, allow_overtime=False)

        channel = RecordingChannel()
        await rt.bus.subscribe(channel)

        summary = await rt.timers.initialize_existing_timers()
        assert summary == {
            "scanned": 5,
            "rearmed": 2,
            "overtime": 1,
            "republished": 1,
            "auto_completed": 1,
            "skipped": 0,
        }

        assert repo.get(past_due.id).status == EntryStatus.Overtime
        assert repo.find_one(entry_id=strict.id) is None
        assert rt.registry.pending(running.id) == {TimerKind.AlmostComplete, TimerKind.Expiry}
        assert rt.registry.pending(nearly_done.id) == {TimerKind.Expiry}
        assert rt.registry.pending(overtime.id) == set()

        overtime_ids = [e["entryId"] for e in channel.of_type("overtime")]
        assert sorted(overtime_ids) == sorted([past_due.id, overtime.id])
        assert "queue_update" in channel.types()

        # 可重复执行
        again = await rt.timers.initialize_existing_timers()
        assert again["rearmed"] == 2
        assert again["overtime"] == 0
        assert again["republished"] == 2
        assert len(rt.registry) == 3

        await fake_scheduler.advance(minutes=1)
        assert repo.get(nearly_done.id).status == EntryStatus.Overtime

    run(scenario, users=5)
