"""排队系统异常定义

按调用方的处理方式分为四类：
- ValidationError: 参数不合法，调用方修正后再试，不应重试
- ConflictError: 与当前状态冲突（充电桩被占用、不在队首等），属于常规结果，
  调用方应重新获取队列状态后再决定是否重试
- NotFoundError: 条目或用户不存在（调用方错误或引用已过期）
- InfrastructureError: 存储/传输故障，记录日志并向上抛出，核心不做重试
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class QueueError(Exception):
    """排队系统异常基类

    Attributes:
        code: 稳定的错误码，供 API 层返回给客户端
        detail: 附加的上下文信息
    """

    code = "queue_error"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


# ---------------------------------------------------------------- validation


class ValidationError(QueueError):
    code = "validation_error"


class InvalidStation(ValidationError):
    code = "invalid_station"

    def __init__(self, station_id: Any, station_count: int):
        super().__init__(
            f"Invalid station id {station_id!r}. Must be 1-{station_count}.",
            station_id=station_id,
            station_count=station_count,
        )


class InvalidDuration(ValidationError):
    code = "invalid_duration"

    def __init__(self, duration_minutes: Any, max_minutes: Optional[int] = None):
        limit = f" and at most {max_minutes}" if max_minutes else ""
        super().__init__(
            f"Duration must be a positive number of minutes{limit}, got {duration_minutes!r}",
            duration_minutes=duration_minutes,
        )


class MissingField(ValidationError):
    code = "missing_field"

    def __init__(self, field: str):
        super().__init__(f"Missing required field: {field}", field=field)


# ---------------------------------------------------------------- conflict


class ConflictError(QueueError):
    code = "conflict"


class AlreadyActive(ConflictError):
    code = "already_active"

    def __init__(self, user_id: int, status: str):
        state = "charging" if status != "waiting" else "in queue"
        super().__init__(f"User is already {state}", user_id=user_id, status=status)


class StationOccupied(ConflictError):
    code = "station_occupied"

    def __init__(self, station_id: int):
        super().__init__(
            "Station is currently occupied. Please wait for the current user to finish.",
            station_id=station_id,
        )


class NotFirstInLine(ConflictError):
    code = "not_first_in_line"

    def __init__(self, user_id: int, position: int):
        super().__init__(
            "User is not first in queue", user_id=user_id, position=position
        )


class CannotAbandonReservation(ConflictError):
    code = "cannot_abandon_reservation"

    def __init__(self, user_id: int, station_id: int):
        super().__init__(
            "Cannot move back - a station has been reserved for you and nobody "
            "unassigned is waiting behind you. Take the station or leave the queue.",
            user_id=user_id,
            station_id=station_id,
        )


class AlreadyLast(ConflictError):
    code = "already_last"

    def __init__(self, user_id: int):
        super().__init__(
            "Cannot move back - you are already at the back of the queue",
            user_id=user_id,
        )


# ---------------------------------------------------------------- not found


class NotFoundError(QueueError):
    code = "not_found"


class EntryNotFound(NotFoundError):
    code = "entry_not_found"

    def __init__(self, entry_id: int):
        super().__init__(f"Queue entry {entry_id} not found", entry_id=entry_id)


class NotInQueue(NotFoundError):
    code = "not_in_queue"

    def __init__(self, user_id: int):
        super().__init__("User not found in queue", user_id=user_id)


class NoActiveSession(NotFoundError):
    code = "no_active_session"

    def __init__(self, entry_id: Optional[int] = None, user_id: Optional[int] = None):
        detail: Dict[str, Any] = {}
        if entry_id is not None:
            detail["entry_id"] = entry_id
        if user_id is not None:
            detail["user_id"] = user_id
        super().__init__("No active charging session found", **detail)


class UnknownUser(NotFoundError):
    code = "unknown_user"

    def __init__(self, user_id: int):
        super().__init__("User does not exist", user_id=user_id)


# ---------------------------------------------------------------- infrastructure


class InfrastructureError(QueueError):
    code = "infrastructure_error"


class StoreError(InfrastructureError):
    code = "store_error"


class StoreNotOpen(InfrastructureError):
    code = "store_not_open"

    def __init__(self):
        super().__init__("Database manager is not open")
