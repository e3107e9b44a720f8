"""配置验证器模块

提供统一的配置验证机制，确保配置的有效性和一致性。
验证失败只记录日志，不阻止服务启动。
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List

from .settings import EventBusConfig, Settings, StationConfig, StorageConfig, TimerConfig

logger = logging.getLogger("evqueue.config.validators")


@dataclass
class ValidationResult:
    """验证结果

    包含验证是否通过、错误信息和警告信息。
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def __post_init__(self):
        self.errors = self.errors or []
        self.warnings = self.warnings or []

    def add_error(self, message: str):
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str):
        self.warnings.append(message)

    def merge(self, other: "ValidationResult"):
        if not other.is_valid:
            self.is_valid = False
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


class ConfigValidator(ABC):
    """配置验证器抽象基类"""

    @abstractmethod
    def validate(self, config: Any) -> ValidationResult:
        raise NotImplementedError


class StationConfigValidator(ConfigValidator):
    """充电桩配置验证器"""

    def validate(self, config: StationConfig) -> ValidationResult:
        result = ValidationResult(is_valid=True, errors=[], warnings=[])

        if config.count < 1:
            result.add_error("充电桩数量必须大于0")
        elif config.count > 64:
            result.add_warning(f"充电桩数量过多({config.count})，请确认配置")

        for station_id, name in config.names.items():
            if not 1 <= station_id <= config.count:
                result.add_warning(f"充电桩名称配置超出范围: {station_id}={name}")
            if not str(name).strip():
                result.add_error(f"充电桩 {station_id} 的名称不能为空")

        return result


class TimerConfigValidator(ConfigValidator):
    """计时配置验证器"""

    def validate(self, config: TimerConfig) -> ValidationResult:
        result = ValidationResult(is_valid=True, errors=[], warnings=[])

        if config.default_duration_minutes > config.max_duration_minutes:
            result.add_error("默认充电时长不能超过最大充电时长")

        if config.almost_complete_lead_minutes >= config.default_duration_minutes:
            result.add_warning("即将完成提醒的提前量不小于默认充电时长，默认会话将不会收到提醒")

        try:
            from zoneinfo import ZoneInfo

            ZoneInfo(config.timezone)
        except Exception:  # ZoneInfoNotFoundError / ValueError
            result.add_error(f"无效的时区: {config.timezone}")

        return result


class EventBusConfigValidator(ConfigValidator):
    """事件总线配置验证器"""

    def validate(self, config: EventBusConfig) -> ValidationResult:
        result = ValidationResult(is_valid=True, errors=[], warnings=[])

        if config.heartbeat_interval_seconds < 1:
            result.add_warning("心跳间隔过短会产生大量无效流量")
        elif config.heartbeat_interval_seconds > 120:
            result.add_warning("心跳间隔过长可能导致代理层断开空闲连接")

        return result


class StorageConfigValidator(ConfigValidator):
    """存储配置验证器"""

    def validate(self, config: StorageConfig) -> ValidationResult:
        result = ValidationResult(is_valid=True, errors=[], warnings=[])

        db_path = config.db_path
        if not db_path or not db_path.strip():
            result.add_error("数据库路径不能为空")
            return result

        if db_path == ":memory:":
            result.add_warning("使用内存数据库，重启后队列数据将丢失")
            return result

        path = Path(db_path)
        parent_dir = path.parent
        if not parent_dir.exists():
            try:
                parent_dir.mkdir(parents=True, exist_ok=True)
                result.add_warning(f"创建数据库目录: {parent_dir}")
            except OSError as e:
                result.add_error(f"无法创建数据库目录 {parent_dir}: {e}")

        if path.exists():
            if not path.is_file():
                result.add_error(f"数据库路径不是文件: {db_path}")
            elif not os.access(path, os.R_OK | os.W_OK):
                result.add_error(f"数据库文件无读写权限: {db_path}")

        return result


def validate_settings(settings: Settings) -> ValidationResult:
    """验证完整的配置对象并记录结果"""
    result = ValidationResult(is_valid=True, errors=[], warnings=[])

    result.merge(StationConfigValidator().validate(settings.stations))
    result.merge(TimerConfigValidator().validate(settings.timers))
    result.merge(EventBusConfigValidator().validate(settings.events))
    result.merge(StorageConfigValidator().validate(settings.storage))

    for warning in result.warnings:
        logger.warning("配置警告: %s", warning)
    for error in result.errors:
        logger.error("配置错误: %s", error)

    return result
