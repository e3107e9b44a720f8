"""排队数据表模型

本模块使用 SQLAlchemy ORM 定义队列条目与用户两张表，并提供
显式生命周期的数据库管理器（open/close 与应用启动/关闭绑定）。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from ..errors import StoreNotOpen


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# SQLAlchemy 基类（Typed Declarative）
class Base(DeclarativeBase):
    pass


class UserRecord(Base):
    """用户表

    仅保存通知需要的最少字段；认证由外部系统负责。
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(
        String, nullable=False, unique=True, index=True, comment="通知邮箱"
    )
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True, comment="显示名称")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, comment="创建时间"
    )

    def __repr__(self) -> str:
        return f"<UserRecord(id={self.id}, email={self.email})>"


class QueueEntryRecord(Base):
    """队列条目表

    字段说明：
    - user_id: 所属用户，同一用户最多一条 waiting/charging/overtime 记录
    - station_id: 0 表示尚未分配；1..N 表示已预留或正在使用
    - position: 仅对 waiting 条目有意义的 1 起始序号，其余状态为 0
    - status: waiting / charging / overtime（完成即删除）
    - duration_minutes / charging_started_at / estimated_end_time: 开始充电时一并写入
    - allow_overtime: 到时后是进入 overtime 还是自动结束
    """

    __tablename__ = "queue_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, nullable=False, index=True, comment="所属用户ID"
    )
    station_id: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, index=True, comment="充电桩编号，0=未分配"
    )
    position: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="全局队列序号"
    )
    status: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default="waiting",
        index=True,
        comment="状态：waiting/charging/overtime",
    )
    duration_minutes: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, comment="请求的充电时长（分钟）"
    )
    charging_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="开始充电时间"
    )
    estimated_end_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True, comment="预计结束时间"
    )
    allow_overtime: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, comment="到时后是否允许进入超时状态"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, comment="创建时间"
    )

    def __repr__(self) -> str:
        return (
            f"<QueueEntryRecord("
            f"id={self.id}, "
            f"user_id={self.user_id}, "
            f"station_id={self.station_id}, "
            f"status={self.status})>"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "station_id": self.station_id,
            "position": self.position,
            "status": self.status,
            "duration_minutes": self.duration_minutes,
            "charging_started_at": (
                self.charging_started_at.isoformat()
                if self.charging_started_at is not None
                else None
            ),
            "estimated_end_time": (
                self.estimated_end_time.isoformat()
                if self.estimated_end_time is not None
                else None
            ),
            "allow_overtime": self.allow_overtime,
        }


class DatabaseManager:
    """数据库管理器

    由应用显式创建并在启动/关闭时调用 open()/close()，
    仓储对象通过构造参数注入，不依赖全局单例。
    """

    def __init__(self, db_path: str = "evqueue.db", *, echo: bool = False):
        """
        Args:
            db_path: SQLite 数据库文件路径，":memory:" 表示内存数据库
            echo: 是否打印 SQL 语句
        """
        self.db_path = db_path
        self.echo = echo
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker[Session]] = None

    @property
    def url(self) -> str:
        if self.db_path == ":memory:":
            return "sqlite://"
        return f"sqlite:///{self.db_path}"

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def open(self) -> "DatabaseManager":
        """创建引擎与表结构（幂等）"""
        if self.engine is not None:
            return self

        kwargs: Dict[str, Any] = {
            "connect_args": {"check_same_thread": False},
            "echo": self.echo,
        }
        if self.db_path == ":memory:":
            # 内存库需要共享同一连接，否则每个会话看到的都是空库
            kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.url, **kwargs)
        Base.metadata.create_all(self.engine, checkfirst=True)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
        self.engine = None
        self._session_factory = None

    def get_session(self) -> Session:
        if self._session_factory is None:
            raise StoreNotOpen()
        return self._session_factory()

    def drop_tables(self) -> None:
        """删除所有表结构（慎用）"""
        if self.engine is None:
            raise StoreNotOpen()
        Base.metadata.drop_all(self.engine)

    def __enter__(self) -> "DatabaseManager":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()
