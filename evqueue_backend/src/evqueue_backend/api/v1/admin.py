"""管理端路由

调用方已在上游完成鉴权，这里只做参数转换与错误映射。
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from ...container import QueueRuntime
from ...errors import QueueError
from ..dependencies import get_runtime, to_http_exception
from ..schemas import AddChargingRequest, CountResponse, EntryResponse

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/status", summary="系统状态")
async def admin_status(runtime: QueueRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    try:
        result = runtime.admin.status()
        result["queue"] = runtime.core.get_queue()
        return result
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.delete("/entries/{entry_id}", response_model=EntryResponse, summary="移除条目")
async def remove_entry(entry_id: int, runtime: QueueRuntime = Depends(get_runtime)):
    try:
        return await runtime.admin.remove_entry(entry_id)
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/entries/{entry_id}/complete",
    response_model=EntryResponse,
    summary="强制结束会话",
)
async def force_complete(entry_id: int, runtime: QueueRuntime = Depends(get_runtime)):
    try:
        return await runtime.admin.force_complete(entry_id)
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/charging",
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="直接开启会话",
)
async def add_charging(
    request: AddChargingRequest, runtime: QueueRuntime = Depends(get_runtime)
):
    try:
        return await runtime.admin.add_charging(
            request.station_id, request.duration_minutes, request.email, request.name
        )
    except QueueError as exc:
        raise to_http_exception(exc) from exc


@router.post("/clear", response_model=CountResponse, summary="清空队列")
async def clear_queue(runtime: QueueRuntime = Depends(get_runtime)):
    try:
        removed = await runtime.admin.clear_queue()
    except QueueError as exc:
        raise to_http_exception(exc) from exc
    return CountResponse(count=removed, message="Queue cleared")


@router.post("/reset-positions", response_model=CountResponse, summary="重排序号")
async def reset_positions(runtime: QueueRuntime = Depends(get_runtime)):
    try:
        changed = await runtime.admin.reset_positions()
    except QueueError as exc:
        raise to_http_exception(exc) from exc
    return CountResponse(count=changed, message="Positions reset")
