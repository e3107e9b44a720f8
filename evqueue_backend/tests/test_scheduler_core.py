from __future__ import annotations

import pytest

from evqueue_backend.errors import (
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
from evqueue_backend.models.entry import EntryStatus
from evqueue_backend.timers.types import TimerKind


def test_first_user_reserves_lowest_free_station(run, check_invariants):
    async def scenario(rt, users):
        entry = await rt.core.add_to_queue(users[0])
        assert entry.position == 1
        assert entry.station_id == 1
        assert entry.status == EntryStatus.Waiting
        check_invariants(rt)

        await rt.notifier.drain()
        assert rt.notifier.gateway.kinds_for(users[0]) == ["station_ready"]

    run(scenario, users=1)


@pytest.mark.parametrize("station_count", [1])
def test_released_station_goes_to_head_of_queue(run, gateway, check_invariants):
    async def scenario(rt, users):
        first, second = users
        await rt.core.add_to_queue(first)
        charging = await rt.core.start_charging(first, 1, 30)

        waiting = await rt.core.add_to_queue(second)
        assert waiting.station_id == 0
        assert waiting.position == 1

        await rt.core.complete_charging(charging.id)
        reserved = rt.core.find_entry_for_user(second)
        assert reserved.station_id == 1
        assert reserved.status == EntryStatus.Waiting
        check_invariants(rt)

        await rt.notifier.drain()
        assert gateway.kinds_for(second).count("station_ready") == 1

    run(scenario, users=2)


def test_add_to_queue_validation(run):
    async def scenario(rt, users):
        with pytest.raises(InvalidStation):
            await rt.core.add_to_queue(users[0], requested_station_id=99)
        with pytest.raises(UnknownUser):
            await rt.core.add_to_queue(12345)

        await rt.core.add_to_queue(users[0], requested_station_id=3)
        with pytest.raises(AlreadyActive):
            await rt.core.add_to_queue(users[0])

    run(scenario, users=1)


def test_positions_stay_dense_after_removal(run, check_invariants):
    async def scenario(rt, users):
        for user_id in users:
            await rt.core.add_to_queue(user_id)

        await rt.core.remove_from_queue(users[1])
        check_invariants(rt)
        positions = {e.user_id: e.position for e in rt.repository.find_waiting()}
        assert positions == {users[0]: 1, users[2]: 2, users[3]: 3}

        with pytest.raises(NotInQueue):
            await rt.core.remove_from_queue(users[1])

    run(scenario, users=4)


@pytest.mark.parametrize("station_count", [2])
def test_leaving_with_reservation_hands_station_on(run, check_invariants):
    async def scenario(rt, users):
        for user_id in users:
            await rt.core.add_to_queue(user_id)

        third = rt.core.find_entry_for_user(users[2])
        assert third.station_id == 0

        await rt.core.remove_from_queue(users[1])
        third = rt.core.find_entry_for_user(users[2])
        assert third.station_id == 2
        assert third.position == 2
        check_invariants(rt)

    run(scenario, users=3)


def test_start_charging_errors(run):
    async def scenario(rt, users):
        first, second = users
        await rt.core.add_to_queue(first)
        await rt.core.add_to_queue(second)

        with pytest.raises(InvalidStation):
            await rt.core.start_charging(first, 0, 30)
        with pytest.raises(InvalidDuration):
            await rt.core.start_charging(first, 1, 0)
        with pytest.raises(InvalidDuration):
            await rt.core.start_charging(first, 1, 10_000)
        with pytest.raises(NotFirstInLine):
            await rt.core.start_charging(second, 2, 30)
        with pytest.raises(NotInQueue):
            await rt.core.start_charging(99, 1, 30)

        await rt.core.start_charging(first, 1, 30)
        with pytest.raises(StationOccupied):
            await rt.core.start_charging(second, 1, 30)

    run(scenario, users=2)


def test_start_charging_sets_session_and_timers(run, clock, check_invariants):
    async def scenario(rt, users):
        await rt.core.add_to_queue(users[0])
        entry = await rt.core.start_charging(users[0], 1, 45, allow_overtime=False)

        assert entry.status == EntryStatus.Charging
        assert entry.position == 0
        assert entry.duration_minutes == 45
        assert entry.charging_started_at == clock.now()
        assert (entry.estimated_end_time - entry.charging_started_at).total_seconds() == 45 * 60
        assert entry.allow_overtime is False
        assert rt.registry.pending(entry.id) == {TimerKind.AlmostComplete, TimerKind.Expiry}
        check_invariants(rt)

    run(scenario, users=1)


@pytest.mark.parametrize("station_count", [2])
def test_starting_on_someone_elses_reservation_swaps_it(run, check_invariants):
    async def scenario(rt, users):
        first, second = users
        await rt.core.add_to_queue(first)
        await rt.core.add_to_queue(second)
        assert rt.core.find_entry_for_user(second).station_id == 2

        await rt.core.start_charging(first, 2, 30)

        other = rt.core.find_entry_for_user(second)
        assert other.station_id == 1
        assert other.position == 1
        check_invariants(rt)

    run(scenario, users=2)


def test_start_then_complete_round_trip(run, clock, gateway, check_invariants):
    async def scenario(rt, users):
        await rt.core.add_to_queue(users[0])
        entry = await rt.core.start_charging(users[0], 1, 30)

        clock.advance(minutes=12, seconds=40)
        done = await rt.core.complete_charging(entry.id)
        assert done.id == entry.id

        assert rt.repository.find_many() == []
        assert len(rt.registry) == 0
        assert rt.core.find_best_station() == 1
        check_invariants(rt)

        with pytest.raises(NoActiveSession):
            await rt.core.complete_charging(entry.id)

        await rt.notifier.drain()
        assert ("complete", users[0], "Charger A", 12) in gateway.calls

    run(scenario, users=1)


def test_complete_for_user(run):
    async def scenario(rt, users):
        with pytest.raises(NoActiveSession):
            await rt.core.complete_charging_for_user(users[0])

        await rt.core.add_to_queue(users[0])
        with pytest.raises(NoActiveSession):
            await rt.core.complete_charging_for_user(users[0])

        await rt.core.start_charging(users[0], 1, 30)
        await rt.core.complete_charging_for_user(users[0])
        assert rt.core.find_entry_for_user(users[0]) is None

    run(scenario, users=1)


@pytest.mark.parametrize("station_count", [1])
def test_move_back_transfers_reservation(run, gateway, check_invariants):
    async def scenario(rt, users):
        a, b = users
        await rt.core.add_to_queue(a)
        await rt.core.add_to_queue(b)

        moved = await rt.core.move_back_one_spot(a)
        assert moved.position == 2
        assert moved.station_id == 0

        promoted = rt.core.find_entry_for_user(b)
        assert promoted.position == 1
        assert promoted.station_id == 1
        check_invariants(rt)

        await rt.notifier.drain()
        assert gateway.kinds_for(b) == ["station_ready"]

    run(scenario, users=2)


@pytest.mark.parametrize("station_count", [2])
def test_move_back_swaps_reservations_and_notifies_both(run, gateway, check_invariants):
    async def scenario(rt, users):
        a, b, c = users
        for user_id in users:
            await rt.core.add_to_queue(user_id)
        assert rt.core.find_entry_for_user(c).station_id == 0

        moved = await rt.core.move_back_one_spot(a)
        assert moved.position == 2
        assert moved.station_id == 2
        promoted = rt.core.find_entry_for_user(b)
        assert promoted.position == 1
        assert promoted.station_id == 1
        check_invariants(rt)

        await rt.notifier.drain()
        ready_for_a = [
            station for kind, uid, station, _ in gateway.calls
            if kind == "station_ready" and uid == a
        ]
        assert ready_for_a == ["Charger A", "Charger B"]
        assert gateway.kinds_for(b) == ["station_ready", "station_ready"]
        assert gateway.kinds_for(c) == []

    run(scenario, users=3)


@pytest.mark.parametrize("station_count", [2])
def test_move_back_refused_without_unassigned_successor(run):
    async def scenario(rt, users):
        a, b = users
        await rt.core.add_to_queue(a)
        await rt.core.add_to_queue(b)

        with pytest.raises(CannotAbandonReservation):
            await rt.core.move_back_one_spot(a)
        with pytest.raises(AlreadyLast):
            await rt.core.move_back_one_spot(b)
        with pytest.raises(NotInQueue):
            await rt.core.move_back_one_spot(999)

    run(scenario, users=2)


@pytest.mark.parametrize("station_count", [1])
def test_move_back_without_reservation(run, check_invariants):
    async def scenario(rt, users):
        for user_id in users:
            await rt.core.add_to_queue(user_id)

        moved = await rt.core.move_back_one_spot(users[1])
        assert moved.position == 3
        assert moved.station_id == 0
        assert rt.core.find_entry_for_user(users[2]).position == 2
        assert rt.core.find_entry_for_user(users[0]).station_id == 1
        check_invariants(rt)

    run(scenario, users=3)


@pytest.mark.parametrize("station_count", [3])
def test_matching_pass_is_idempotent(run, check_invariants):
    async def scenario(rt, users):
        for user_id in users:
            await rt.core.add_to_queue(user_id)

        assert await rt.core.assign_stations_to_waiting_users() == []
        reserved = {e.user_id: e.station_id for e in rt.repository.find_waiting()}
        assert reserved == {users[0]: 1, users[1]: 2, users[2]: 3, users[3]: 0}

        # 手动释放一个预留后重新匹配
        rt.repository.update(rt.core.find_entry_for_user(users[1]).id, station_id=0)
        first = await rt.core.assign_stations_to_waiting_users()
        second = await rt.core.assign_stations_to_waiting_users()
        assert [s for _, s in first] == [2]
        assert second == []
        assert rt.core.find_entry_for_user(users[1]).station_id == 2
        check_invariants(rt)

    run(scenario, users=4)


@pytest.mark.parametrize("station_count", [2])
def test_mixed_operations_keep_invariants(run, check_invariants):
    async def scenario(rt, users):
        for user_id in users:
            await rt.core.add_to_queue(user_id)
            check_invariants(rt)

        s1 = await rt.core.start_charging(users[0], 1, 30)
        check_invariants(rt)
        await rt.core.move_back_one_spot(users[2])
        check_invariants(rt)
        await rt.core.remove_from_queue(users[3])
        check_invariants(rt)
        s2 = await rt.core.start_charging(users[1], 2, 20)
        check_invariants(rt)
        await rt.core.complete_charging(s1.id)
        check_invariants(rt)
        await rt.core.add_to_queue(users[0])
        check_invariants(rt)
        await rt.core.complete_charging(s2.id)
        check_invariants(rt)
        assert await rt.core.renumber_waiting() == 0

        waiting = rt.repository.find_waiting()
        assert [e.user_id for e in waiting] == [users[2], users[4], users[0]]
        assert [e.station_id for e in waiting] == [1, 2, 0]

    run(scenario, users=5)
