"""配置管理

默认值 < evqueue.yaml < EVQUEUE_* 环境变量。
"""

from .settings import (
    EventBusConfig,
    NotificationConfig,
    Settings,
    StationConfig,
    StorageConfig,
    TimerConfig,
    get_settings,
    reset_settings,
)

__all__ = [
    "EventBusConfig",
    "NotificationConfig",
    "Settings",
    "StationConfig",
    "StorageConfig",
    "TimerConfig",
    "get_settings",
    "reset_settings",
]
