"""排队调度

- SchedulerCore: 入队 / 离队 / 后退 / 开始与结束充电 / 匹配
- QueueView: 队列快照与预计时间
- AdminService: 管理端操作
- matching: 匹配相关的纯函数
"""

from .admin import AdminService
from .scheduler import SchedulerCore
from .view import QueueView

__all__ = ["AdminService", "SchedulerCore", "QueueView"]
