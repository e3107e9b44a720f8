"""EV Queue 后端入口

- FastAPI 实例与生命周期（启动时打开数据库、启动计时调度器并对账）
- CORS 支持
- /api/v1 路由
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.v1 import admin_router, router as api_v1_router
from .config.settings import get_settings
from .container import QueueRuntime
from .utils.logging import setup_logging

logger = setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: D401 (fastapi 兼容)
    """应用生命周期：启动运行时 & 关闭清理。"""
    logger.info("Application starting ...")

    runtime: Optional[QueueRuntime] = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = QueueRuntime(get_settings())
        app.state.runtime = runtime

    logging.getLogger("evqueue").setLevel(runtime.settings.log_level.upper())

    try:
        await runtime.start()
    except Exception as exc:
        logger.exception("Failed to initialise queue runtime: %s", exc)
        raise

    logger.info("Application started")

    try:
        yield
    finally:
        logger.info("Application shutting down ...")
        await runtime.stop()


def create_app(runtime: Optional[QueueRuntime] = None) -> FastAPI:
    application = FastAPI(
        title="EV Queue Backend",
        description="充电桩排队与会话计时 API",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.runtime = runtime

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_v1_router)
    application.include_router(admin_router)

    @application.get("/", summary="Hello")
    async def root() -> dict[str, Any]:
        return {"message": "Hello EV Queue"}

    return application


app = create_app()


# 可选：uvicorn 直接运行入口
def main() -> None:  # pragma: no cover
    import uvicorn

    uvicorn.run("evqueue_backend.app:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":  # pragma: no cover
    main()
