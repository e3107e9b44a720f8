"""路由共用的依赖与错误映射"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from ..container import QueueRuntime
from ..errors import (
    ConflictError,
    InfrastructureError,
    NotFoundError,
    QueueError,
    ValidationError,
)

logger = logging.getLogger("evqueue.api")

_STATUS_CODES = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InfrastructureError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def get_runtime(request: Request) -> QueueRuntime:
    """依赖注入：获取应用持有的运行时"""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or not runtime.started:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "not_ready", "message": "Queue runtime is not started"},
        )
    return runtime


def to_http_exception(exc: QueueError) -> HTTPException:
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            code = status_code
            break

    if code >= 500:
        logger.error("请求失败 code=%s message=%s", exc.code, exc.message)
    else:
        logger.info("请求被拒绝 code=%s message=%s", exc.code, exc.message)
    return HTTPException(status_code=code, detail=exc.to_dict())
