"""充电桩匹配的纯函数

这些函数只处理内存中的条目列表，不访问存储，也不产生副作用，
调用方负责在持有锁的情况下读取最新条目并落库。
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Set, Tuple

from ..models.entry import Entry


def occupied_stations(entries: Iterable[Entry]) -> Set[int]:
    """正在充电或超时占用的充电桩"""
    return {e.station_id for e in entries if e.is_active and e.station_id}


def reserved_stations(entries: Iterable[Entry]) -> Set[int]:
    """已预留给等待者的充电桩"""
    return {e.station_id for e in entries if e.is_reserved}


def free_stations(station_ids: Sequence[int], entries: Iterable[Entry]) -> List[int]:
    """未被占用的充电桩，升序"""
    occupied = occupied_stations(entries)
    return sorted(s for s in station_ids if s not in occupied)


def assignable_stations(station_ids: Sequence[int], entries: Iterable[Entry]) -> List[int]:
    """既未被占用也未被预留的充电桩，升序"""
    entries = list(entries)
    taken = occupied_stations(entries) | reserved_stations(entries)
    return sorted(s for s in station_ids if s not in taken)


def unassigned_waiting(entries: Iterable[Entry]) -> List[Entry]:
    waiting = [e for e in entries if e.is_waiting and not e.is_reserved]
    waiting.sort(key=lambda e: (e.position, e.id))
    return waiting


def pair_stations(
    station_ids: Sequence[int], entries: Iterable[Entry]
) -> List[Tuple[Entry, int]]:
    """贪心配对：空闲充电桩（升序）与未分配的等待者（按队列序号）一一对应

    对同一份条目重复调用得到同一结果；落库后再调用返回空列表。
    """
    entries = list(entries)
    stations = assignable_stations(station_ids, entries)
    return list(zip(unassigned_waiting(entries), stations))


def station_loads(station_ids: Sequence[int], entries: Iterable[Entry]) -> Dict[int, int]:
    """每个充电桩关联的条目数（占用 + 预留）"""
    loads = {s: 0 for s in station_ids}
    for entry in entries:
        if entry.station_id in loads:
            loads[entry.station_id] += 1
    return loads


def rank_stations(station_ids: Sequence[int], entries: Iterable[Entry]) -> List[int]:
    """按（空闲优先，负载升序，编号升序）排序"""
    entries = list(entries)
    occupied = occupied_stations(entries)
    loads = station_loads(station_ids, entries)
    return sorted(station_ids, key=lambda s: (s in occupied, loads[s], s))


def dense_positions(waiting: Sequence[Entry]) -> List[Tuple[Entry, int]]:
    """按现有顺序重新编号为 1..n，只返回需要修改的条目"""
    ordered = sorted(waiting, key=lambda e: (e.position, e.id))
    return [
        (entry, index)
        for index, entry in enumerate(ordered, start=1)
        if entry.position != index
    ]
