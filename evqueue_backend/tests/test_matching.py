from __future__ import annotations

from evqueue_backend.models.entry import Entry, EntryStatus
from evqueue_backend.scheduling.matching import (
    assignable_stations,
    dense_positions,
    free_stations,
    pair_stations,
    rank_stations,
)

STATIONS = [1, 2, 3, 4]


def _waiting(entry_id: int, position: int, station_id: int = 0) -> Entry:
    return Entry(id=entry_id, user_id=entry_id, position=position, station_id=station_id)


def _charging(entry_id: int, station_id: int, status=EntryStatus.Charging) -> Entry:
    return Entry(id=entry_id, user_id=entry_id, station_id=station_id, status=status)


def test_free_stations_ignore_reservations():
    entries = [_charging(1, 2), _charging(2, 4, EntryStatus.Overtime), _waiting(3, 1, 1)]
    assert free_stations(STATIONS, entries) == [1, 3]
    assert assignable_stations(STATIONS, entries) == [3]


def test_pairing_follows_queue_order_and_station_ids():
    entries = [
        _charging(1, 1),
        _waiting(2, 3),
        _waiting(3, 1),
        _waiting(4, 2, station_id=3),
    ]
    pairs = [(entry.id, station) for entry, station in pair_stations(STATIONS, entries)]
    # station 3 is already reserved by entry 4
    assert pairs == [(3, 2), (2, 4)]


def test_pairing_is_idempotent_once_applied():
    entries = [_waiting(1, 1), _waiting(2, 2)]
    first = pair_stations(STATIONS, entries)
    assert [(e.id, s) for e, s in first] == [(1, 1), (2, 2)]

    applied = [entry.copy(station_id=station) for entry, station in first]
    assert pair_stations(STATIONS, applied) == []


def test_more_waiters_than_stations():
    entries = [_waiting(i, i) for i in range(1, 7)]
    pairs = pair_stations(STATIONS, entries)
    assert [e.id for e, _ in pairs] == [1, 2, 3, 4]


def test_rank_prefers_free_then_low_load():
    entries = [
        _charging(1, 1),
        _waiting(2, 1, station_id=2),
        _waiting(3, 2, station_id=3),
        _charging(4, 3),
    ]
    assert rank_stations(STATIONS, entries) == [4, 2, 1, 3]


def test_dense_positions_only_reports_changes():
    entries = [_waiting(1, 1), _waiting(2, 3), _waiting(3, 7)]
    changes = [(e.id, p) for e, p in dense_positions(entries)]
    assert changes == [(2, 2), (3, 3)]
