"""配置加载器模块

使用策略模式分离默认值、YAML 文件、环境变量等不同配置源的加载逻辑，
按优先级合并后再交给 ConfigParser 转换为 Settings。
"""

from __future__ import annotations

import logging
import os
import yaml
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Any, List

from .settings import (
    EventBusConfig,
    NotificationConfig,
    Settings,
    StationConfig,
    StorageConfig,
    TimerConfig,
)

logger = logging.getLogger("evqueue.config.loaders")

CONFIG_FILE_NAME = "evqueue.yaml"


class ConfigLoader(ABC):
    """配置加载器抽象基类"""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """加载配置数据

        Returns:
            配置数据字典
        """
        raise NotImplementedError

    @abstractmethod
    def is_available(self) -> bool:
        """检查配置源是否可用"""
        raise NotImplementedError


class YamlConfigLoader(ConfigLoader):
    """YAML 配置文件加载器"""

    def __init__(self, file_path: Path | str | None = None):
        """初始化 YAML 配置加载器

        Args:
            file_path: YAML 文件路径，为 None 时自动向上查找 evqueue.yaml
        """
        self.file_path = Path(file_path) if file_path else self._discover_config_path()
        logger.debug("YAML配置文件路径: %s", self.file_path)

    def _discover_config_path(self) -> Path:
        """从当前工作目录与包目录开始向上查找 evqueue.yaml"""
        starts = [Path.cwd() / CONFIG_FILE_NAME, Path(__file__).resolve()]
        for start in starts:
            for parent in start.parents:
                candidate = parent / CONFIG_FILE_NAME
                if candidate.exists():
                    logger.info("发现配置文件: %s", candidate)
                    return candidate

        fallback_path = Path.cwd() / CONFIG_FILE_NAME
        logger.debug("未找到配置文件，使用默认路径: %s", fallback_path)
        return fallback_path

    def is_available(self) -> bool:
        return self.file_path.exists()

    def load(self) -> Dict[str, Any]:
        if not self.is_available():
            logger.warning("配置文件不存在: %s", self.file_path)
            return {}

        try:
            content = self.file_path.read_text(encoding="utf-8")
            data = yaml.safe_load(content) or {}
            if not isinstance(data, dict):
                logger.error("配置文件顶层必须是映射: %s", self.file_path)
                return {}
            logger.info("成功加载配置文件: %s", self.file_path)
            return data
        except (OSError, yaml.YAMLError) as e:
            logger.error("加载配置文件失败: %s", e)
            return {}


class EnvironmentConfigLoader(ConfigLoader):
    """环境变量配置加载器

    支持的变量（前缀默认 EVQUEUE_）：
    - EVQUEUE_DB_PATH -> storage.db_path
    - EVQUEUE_STATION_COUNT -> stations.count
    - EVQUEUE_HEARTBEAT_INTERVAL -> events.heartbeat_interval_seconds
    - EVQUEUE_LOG_LEVEL -> log_level
    - EVQUEUE_TIMEZONE -> timers.timezone
    """

    _MAPPING = {
        "db_path": ("storage", "db_path"),
        "station_count": ("stations", "count"),
        "heartbeat_interval": ("events", "heartbeat_interval_seconds"),
        "timezone": ("timers", "timezone"),
        "log_level": (None, "log_level"),
    }

    def __init__(self, prefix: str = "EVQUEUE_"):
        self.prefix = prefix

    def is_available(self) -> bool:
        return any(key.startswith(self.prefix) for key in os.environ)

    def load(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self.prefix):
                continue
            config_key = key[len(self.prefix):].lower()
            target = self._MAPPING.get(config_key)
            if target is None:
                logger.debug("忽略未知环境变量: %s", key)
                continue
            section, field = target
            if section is None:
                config[field] = value
            else:
                config.setdefault(section, {})[field] = value

        if config:
            logger.info("从环境变量加载了 %d 个配置项", len(config))

        return config


class DefaultConfigLoader(ConfigLoader):
    """默认配置加载器"""

    def is_available(self) -> bool:
        return True

    def load(self) -> Dict[str, Any]:
        return {
            "log_level": "INFO",
            "stations": {"count": 8},
            "timers": {
                "almost_complete_lead_minutes": 2,
                "default_duration_minutes": 30,
                "max_duration_minutes": 240,
                "timezone": "UTC",
            },
            "events": {"heartbeat_interval_seconds": 30.0, "max_pending_events": 256},
            "storage": {"db_path": "./data/evqueue.db"},
        }


class CompositeConfigLoader(ConfigLoader):
    """组合配置加载器

    按优先级顺序合并多个配置源的数据（列表中越靠后优先级越高）。
    """

    def __init__(self, loaders: List[ConfigLoader]):
        self.loaders = loaders

    def is_available(self) -> bool:
        return any(loader.is_available() for loader in self.loaders)

    def load(self) -> Dict[str, Any]:
        merged_config: Dict[str, Any] = {}

        for loader in self.loaders:
            if loader.is_available():
                config = loader.load()
                merged_config = self._deep_merge(merged_config, config)
                logger.debug("合并配置: %s", type(loader).__name__)

        return merged_config

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result


class ConfigParser:
    """配置解析器

    负责将原始配置数据转换为 Settings 对象。单个配置段解析失败时
    回退到该段的默认值，避免因局部配置错误导致服务无法启动。
    """

    _SECTIONS = {
        "stations": StationConfig,
        "timers": TimerConfig,
        "events": EventBusConfig,
        "notifications": NotificationConfig,
        "storage": StorageConfig,
    }

    @staticmethod
    def parse(config_data: Dict[str, Any]) -> Settings:
        sections: Dict[str, Any] = {}
        for name, model in ConfigParser._SECTIONS.items():
            sections[name] = ConfigParser._parse_section(
                name, model, config_data.get(name) or {}
            )

        settings = Settings(
            log_level=str(config_data.get("log_level", "INFO")),
            **sections,
        )

        from .validators import validate_settings

        validation_result = validate_settings(settings)
        if not validation_result.is_valid:
            # 即使验证失败仍返回配置，错误已记录
            logger.error("配置验证失败，但仍将使用该配置")

        logger.info(
            "配置解析完成，充电桩数量: %d，数据库: %s",
            settings.stations.count,
            settings.storage.db_path,
        )
        return settings

    @staticmethod
    def _parse_section(name: str, model: type, data: Dict[str, Any]):
        try:
            return model(**data)
        except Exception as e:  # pydantic.ValidationError / TypeError
            logger.warning("配置段 %s 解析失败，使用默认配置: %s", name, e)
            return model()


def create_default_config_loader() -> CompositeConfigLoader:
    """创建默认的配置加载器

    按优先级顺序：默认配置 < YAML文件 < 环境变量
    """
    return CompositeConfigLoader(
        [
            DefaultConfigLoader(),
            YamlConfigLoader(),
            EnvironmentConfigLoader(),
        ]
    )
