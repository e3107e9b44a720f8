"""时钟抽象，计时引擎与队列视图通过注入的时钟取当前时间"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """返回带时区的当前时间"""
        ...


class SystemClock:
    """系统 UTC 时钟"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
