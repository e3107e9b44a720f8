from __future__ import annotations

from pydantic import BaseModel, Field
from pathlib import Path
from typing import Dict, Optional
import logging
import os

logger = logging.getLogger("evqueue.config")


class StationConfig(BaseModel):
    count: int = Field(default=8, ge=1)
    # 可选的自定义显示名称，键为充电桩编号
    names: Dict[int, str] = Field(default_factory=dict)

    def name_for(self, station_id: int) -> str:
        """返回充电桩显示名称，默认 Charger A..Z"""
        if station_id in self.names:
            return self.names[station_id]
        if 1 <= station_id <= 26:
            return f"Charger {chr(ord('A') + station_id - 1)}"
        return f"Charger {station_id}"

    def station_ids(self) -> list[int]:
        return list(range(1, self.count + 1))

    def is_valid(self, station_id: object) -> bool:
        return (
            isinstance(station_id, int)
            and not isinstance(station_id, bool)
            and 1 <= station_id <= self.count
        )


class TimerConfig(BaseModel):
    almost_complete_lead_minutes: int = Field(default=2, ge=1)
    default_duration_minutes: int = Field(default=30, ge=1)
    max_duration_minutes: int = Field(default=240, ge=1)
    timezone: str = Field(default="UTC")


class EventBusConfig(BaseModel):
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    max_pending_events: int = Field(default=256, ge=1)


class NotificationConfig(BaseModel):
    enabled: bool = Field(default=True)
    sender_name: str = Field(default="EV Charging Station")


class StorageConfig(BaseModel):
    db_path: str = Field(default="./data/evqueue.db")
    echo_sql: bool = Field(default=False)

    def __init__(self, **data):
        super().__init__(**data)
        # 支持环境变量覆盖数据库路径
        if "EVQUEUE_DB_PATH" in os.environ:
            self.db_path = os.environ["EVQUEUE_DB_PATH"]


class Settings(BaseModel):
    log_level: str = Field(default="INFO")
    stations: StationConfig = Field(default_factory=StationConfig)
    timers: TimerConfig = Field(default_factory=TimerConfig)
    events: EventBusConfig = Field(default_factory=EventBusConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @staticmethod
    def from_yaml(path: Optional[Path | str] = None) -> "Settings":
        """从 YAML 文件加载配置（叠加默认值与环境变量）"""
        from .loaders import (
            CompositeConfigLoader,
            ConfigParser,
            DefaultConfigLoader,
            EnvironmentConfigLoader,
            YamlConfigLoader,
        )

        loader = CompositeConfigLoader(
            [
                DefaultConfigLoader(),
                YamlConfigLoader(path),
                EnvironmentConfigLoader(),
            ]
        )
        return ConfigParser.parse(loader.load())


_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings.from_yaml()
    return _settings


def reset_settings() -> None:
    """清除缓存的配置（主要用于测试）"""
    global _settings
    _settings = None
