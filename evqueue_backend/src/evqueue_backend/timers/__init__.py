"""会话计时

- Clock / SystemClock: 可注入的时钟
- TimerRegistry: 基于 APScheduler 的按条目计时任务注册表
- TimerKind / make_timer_id: 计时任务 ID 辅助工具

TimerEngine 依赖事件总线，请从 timers.engine 导入。
"""

from .clock import Clock, SystemClock
from .registry import TimerRegistry
from .types import TimerKind, make_timer_id

__all__ = [
    "Clock",
    "SystemClock",
    "TimerRegistry",
    "TimerKind",
    "make_timer_id",
]
