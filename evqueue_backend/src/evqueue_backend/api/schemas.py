"""API 请求与响应模型

使用 Pydantic 进行请求校验与响应序列化。
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.entry import EntryStatus


class EntryResponse(BaseModel):
    """队列条目"""

    id: int = Field(..., description="条目ID")
    user_id: int = Field(..., description="用户ID")
    station_id: int = Field(0, description="充电桩编号，0 表示未分配")
    position: int = Field(0, description="队列序号，仅等待中有效")
    status: EntryStatus = Field(..., description="waiting / charging / overtime")
    duration_minutes: Optional[int] = Field(None, description="充电时长（分钟）")
    charging_started_at: Optional[datetime] = Field(None, description="开始充电时间")
    estimated_end_time: Optional[datetime] = Field(None, description="预计结束时间")
    allow_overtime: bool = Field(True, description="到时后是否允许超时")
    created_at: Optional[datetime] = Field(None, description="创建时间")

    class Config:
        from_attributes = True


class QueueResponse(BaseModel):
    queue: List[Dict[str, Any]] = Field(..., description="队列快照")


class JoinQueueRequest(BaseModel):
    user_id: int = Field(..., description="用户ID")
    station_id: Optional[int] = Field(None, description="偏好的充电桩，仅作记录")


class StartChargingRequest(BaseModel):
    user_id: int = Field(..., description="用户ID")
    station_id: int = Field(..., description="充电桩编号")
    duration_minutes: int = Field(..., description="充电时长（分钟）")
    allow_overtime: bool = Field(True, description="到时后是否允许超时")


class CompleteChargingRequest(BaseModel):
    """entry_id 与 user_id 至少提供一个"""

    entry_id: Optional[int] = Field(None, description="条目ID")
    user_id: Optional[int] = Field(None, description="用户ID")


class RemainingTimeResponse(BaseModel):
    entry_id: int
    remaining_seconds: int = Field(..., description="剩余秒数，超时后为负数")


class StationResponse(BaseModel):
    station_id: int
    name: str


class Assignment(BaseModel):
    entry_id: int
    station_id: int


class AssignmentsResponse(BaseModel):
    assignments: List[Assignment] = Field(default_factory=list)


class TimerInitResponse(BaseModel):
    summary: Dict[str, int] = Field(..., description="对账结果统计")


class CreateUserRequest(BaseModel):
    email: str = Field(..., min_length=3, description="通知邮箱")
    name: Optional[str] = Field(None, description="显示名称")


class UserResponse(BaseModel):
    id: int
    name: str
    email: str

    class Config:
        from_attributes = True


class AddChargingRequest(BaseModel):
    station_id: int = Field(..., description="充电桩编号")
    duration_minutes: int = Field(..., description="充电时长（分钟）")
    email: Optional[str] = Field(None, description="用户邮箱，为空时创建匿名用户")
    name: Optional[str] = Field(None, description="显示名称")


class CountResponse(BaseModel):
    count: int
    message: str


class HealthResponse(BaseModel):
    status: str
    database: bool
    timers_running: bool
    pending_timers: int
    subscribers: int
    timestamp: datetime


class ErrorResponse(BaseModel):
    """错误响应模型"""

    error: str = Field(..., description="错误码")
    message: str = Field(..., description="错误信息")
    detail: Optional[Dict[str, Any]] = Field(None, description="附加信息")
