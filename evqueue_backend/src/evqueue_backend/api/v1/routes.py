"""API v1 路由定义。

排队、充电、计时与实时事件流相关的端点。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse

from ...container import QueueRuntime
from ...errors import MissingField, NotInQueue, QueueError
from ...events.bus import QueueChannel
from ..dependencies import get_runtime, to_http_exception
from ..schemas import (
    Assignment,
    AssignmentsResponse,
    CompleteChargingRequest,
    CreateUserRequest,
    EntryResponse,
    HealthResponse,
    JoinQueueRequest,
    QueueResponse,
    RemainingTimeResponse,
    StartChargingRequest,
    StationResponse,
    TimerInitResponse,
    UserResponse,
)

router = APIRouter(prefix="/api/v1", tags=["queue"])


@router.get("/queue", response_model=QueueResponse, summary="获取队列")
async def get_queue(
    estimates: bool = Query(True, description="是否附带预计时间"),
    runtime: QueueRuntime = Depends(get_runtime),
):
    try:
        if estimates:
            return {"queue": runtime.core.get_queue_with_estimates()}
        return {"queue": runtime.core.get_queue()}
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.get("/queue/{user_id}", response_model=EntryResponse, summary="获取用户当前条目")
async def get_user_entry(user_id: int, runtime: QueueRuntime = Depends(get_runtime)):
    try:
        entry = runtime.core.find_entry_for_user(user_id)
    except QueueError as exc:
        raise to_http_exception(exc) from exc
    if entry is None:
        raise to_http_exception(NotInQueue(user_id))
    return entry


@router.post(
    "/queue",
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="加入队列",
)
async def join_queue(
    request: JoinQueueRequest, runtime: QueueRuntime = Depends(get_runtime)
):
    try:
        return await runtime.core.add_to_queue(request.user_id, request.station_id)
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.delete("/queue/{user_id}", response_model=EntryResponse, summary="离开队列")
async def leave_queue(user_id: int, runtime: QueueRuntime = Depends(get_runtime)):
    try:
        return await runtime.core.remove_from_queue(user_id)
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/queue/{user_id}/move-back",
    response_model=EntryResponse,
    summary="向后移动一位",
)
async def move_back(user_id: int, runtime: QueueRuntime = Depends(get_runtime)):
    try:
        return await runtime.core.move_back_one_spot(user_id)
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.post("/queue/assign", response_model=AssignmentsResponse, summary="执行一次匹配")
async def assign_stations(runtime: QueueRuntime = Depends(get_runtime)):
    try:
        pairs = await runtime.core.assign_stations_to_waiting_users()
    except QueueError as exc:
        raise to_http_exception(exc) from exc
    return AssignmentsResponse(
        assignments=[Assignment(entry_id=e, station_id=s) for e, s in pairs]
    )


@router.post("/charging/start", response_model=EntryResponse, summary="开始充电")
async def start_charging(
    request: StartChargingRequest, runtime: QueueRuntime = Depends(get_runtime)
):
    try:
        return await runtime.core.start_charging(
            request.user_id,
            request.station_id,
            request.duration_minutes,
            request.allow_overtime,
        )
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.post("/charging/complete", response_model=EntryResponse, summary="结束充电")
async def complete_charging(
    request: CompleteChargingRequest, runtime: QueueRuntime = Depends(get_runtime)
):
    try:
        if request.entry_id is not None:
            return await runtime.core.complete_charging(request.entry_id)
        if request.user_id is not None:
            return await runtime.core.complete_charging_for_user(request.user_id)
        raise MissingField("entry_id")
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.get(
    "/charging/{entry_id}/remaining",
    response_model=RemainingTimeResponse,
    summary="剩余充电时间",
)
async def remaining_time(entry_id: int, runtime: QueueRuntime = Depends(get_runtime)):
    try:
        seconds = runtime.timers.get_remaining_seconds(entry_id)
    except QueueError as exc:
        raise to_http_exception(exc) from exc
    return RemainingTimeResponse(entry_id=entry_id, remaining_seconds=seconds)


@router.get("/stations/best", response_model=StationResponse, summary="推荐充电桩")
async def best_station(runtime: QueueRuntime = Depends(get_runtime)):
    try:
        station_id = runtime.core.find_best_station()
    except QueueError as exc:
        raise to_http_exception(exc) from exc
    return StationResponse(
        station_id=station_id, name=runtime.settings.stations.name_for(station_id)
    )


@router.post("/timers/init", response_model=TimerInitResponse, summary="计时对账")
async def init_timers(runtime: QueueRuntime = Depends(get_runtime)):
    try:
        summary = await runtime.timers.initialize_existing_timers()
    except QueueError as exc:
        raise to_http_exception(exc) from exc
    return TimerInitResponse(summary=summary)


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="登记用户",
)
async def create_user(
    request: CreateUserRequest, runtime: QueueRuntime = Depends(get_runtime)
):
    try:
        existing = runtime.directory.find_by_email(request.email)
        if existing is not None:
            return existing
        return runtime.directory.create_user(request.email, request.name)
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.get("/events", summary="实时事件流（NDJSON）")
async def stream_events(runtime: QueueRuntime = Depends(get_runtime)):
    channel = QueueChannel(runtime.settings.events.max_pending_events)
    subscriber = await runtime.bus.subscribe(channel)

    async def body():
        try:
            async for line in channel.lines():
                yield line
        finally:
            runtime.bus.unsubscribe(subscriber)

    return StreamingResponse(
        body(),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/health", response_model=HealthResponse, summary="健康检查")
async def health(runtime: QueueRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "database": runtime.db.is_open,
        "timers_running": bool(runtime.registry.scheduler.running),
        "pending_timers": len(runtime.registry),
        "subscribers": runtime.bus.subscriber_count,
        "timestamp": datetime.now(timezone.utc),
    }
