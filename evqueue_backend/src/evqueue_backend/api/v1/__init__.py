"""API v1 包初始化模块。

保持对外导入简洁，将具体路由实现委托给 `routes` 与 `admin` 模块。
"""

from __future__ import annotations

from .admin import router as admin_router
from .routes import router

__all__ = ["router", "admin_router"]
