"""排队条目领域模型

与 ORM 记录解耦的只读视图，仓储层读出后即转换为该对象，
避免会话关闭后访问过期属性。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EntryStatus(str, Enum):
    """条目状态

    - waiting: 在全局队列中等待（可能已预留充电桩）
    - charging: 正在充电
    - overtime: 时长已到但尚未释放充电桩

    completed 不落库，以删除条目表示。
    """

    Waiting = "waiting"
    Charging = "charging"
    Overtime = "overtime"


ACTIVE_STATUSES = (EntryStatus.Charging, EntryStatus.Overtime)
OPEN_STATUSES = (EntryStatus.Waiting, EntryStatus.Charging, EntryStatus.Overtime)

UNASSIGNED_STATION = 0


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Entry:
    id: int
    user_id: int
    station_id: int = UNASSIGNED_STATION
    position: int = 0
    status: EntryStatus = EntryStatus.Waiting
    duration_minutes: Optional[int] = None
    charging_started_at: Optional[datetime] = None
    estimated_end_time: Optional[datetime] = None
    allow_overtime: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_waiting(self) -> bool:
        return self.status == EntryStatus.Waiting

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_reserved(self) -> bool:
        """等待中且已被分配充电桩"""
        return self.is_waiting and self.station_id > UNASSIGNED_STATION

    def copy(self, **changes: Any) -> "Entry":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """转换为推送/接口使用的 JSON 结构（camelCase）"""
        return {
            "id": self.id,
            "userId": self.user_id,
            "stationId": self.station_id,
            "position": self.position,
            "status": self.status.value,
            "durationMinutes": self.duration_minutes,
            "chargingStartedAt": _iso(self.charging_started_at),
            "estimatedEndTime": _iso(self.estimated_end_time),
            "allowOvertime": self.allow_overtime,
            "createdAt": _iso(self.created_at),
        }

    def __str__(self) -> str:
        return (
            f"Entry(id={self.id}, user={self.user_id}, station={self.station_id}, "
            f"position={self.position}, status={self.status.value})"
        )


@dataclass(frozen=True)
class UserInfo:
    """通知所需的用户信息"""

    id: int
    name: str
    email: str
