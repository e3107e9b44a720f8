"""数据访问层实现

使用 Repository 模式封装队列条目与用户的数据库操作。
所有读取结果都会转换为领域对象 Entry / UserInfo 返回，
SQLAlchemy 异常统一包装为 StoreError。
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..errors import EntryNotFound, StoreError
from ..models.entry import Entry, EntryStatus, UserInfo
from ..models.queue_entry import DatabaseManager, QueueEntryRecord, UserRecord

logger = logging.getLogger("evqueue.store")

StatusFilter = Union[EntryStatus, str, Iterable[Union[EntryStatus, str]], None]

_UPDATABLE_FIELDS = {
    "station_id",
    "position",
    "status",
    "duration_minutes",
    "charging_started_at",
    "estimated_end_time",
    "allow_overtime",
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite 不保存时区信息，读出后统一补上 UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _status_values(status: StatusFilter) -> Optional[List[str]]:
    if status is None:
        return None
    if isinstance(status, (EntryStatus, str)):
        return [EntryStatus(status).value]
    return [EntryStatus(s).value for s in status]


class EntryRepository:
    """队列条目数据访问层

    支持按 entry_id / user_id / station_id / status（单值或集合）筛选，
    结果按 station_id、position、id 升序排列。同一调用方写后即可读到。
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.db_manager.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("数据库操作失败: %s", e)
            raise StoreError(f"Store operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _to_entry(record: QueueEntryRecord) -> Entry:
        return Entry(
            id=record.id,
            user_id=record.user_id,
            station_id=record.station_id,
            position=record.position,
            status=EntryStatus(record.status),
            duration_minutes=record.duration_minutes,
            charging_started_at=_as_utc(record.charging_started_at),
            estimated_end_time=_as_utc(record.estimated_end_time),
            allow_overtime=bool(record.allow_overtime),
            created_at=_as_utc(record.created_at) or datetime.now(timezone.utc),
        )

    @staticmethod
    def _apply_filters(
        query: Query,
        *,
        entry_id: Optional[int] = None,
        user_id: Optional[int] = None,
        station_id: Optional[int] = None,
        status: StatusFilter = None,
    ) -> Query:
        if entry_id is not None:
            query = query.filter(QueueEntryRecord.id == entry_id)
        if user_id is not None:
            query = query.filter(QueueEntryRecord.user_id == user_id)
        if station_id is not None:
            query = query.filter(QueueEntryRecord.station_id == station_id)
        statuses = _status_values(status)
        if statuses is not None:
            query = query.filter(QueueEntryRecord.status.in_(statuses))
        return query

    def create(
        self,
        *,
        user_id: int,
        position: int,
        station_id: int = 0,
        status: EntryStatus = EntryStatus.Waiting,
        duration_minutes: Optional[int] = None,
        charging_started_at: Optional[datetime] = None,
        estimated_end_time: Optional[datetime] = None,
        allow_overtime: bool = True,
    ) -> Entry:
        with self._session() as session:
            record = QueueEntryRecord(
                user_id=user_id,
                station_id=station_id,
                position=position,
                status=EntryStatus(status).value,
                duration_minutes=duration_minutes,
                charging_started_at=charging_started_at,
                estimated_end_time=estimated_end_time,
                allow_overtime=allow_overtime,
            )
            session.add(record)
            session.flush()
            entry = self._to_entry(record)

        logger.debug("创建队列条目 %s", entry)
        return entry

    def find_one(self, **filters: Any) -> Optional[Entry]:
        with self._session() as session:
            query = self._apply_filters(session.query(QueueEntryRecord), **filters)
            record = query.order_by(QueueEntryRecord.id).first()
            return self._to_entry(record) if record is not None else None

    def get(self, entry_id: int) -> Entry:
        entry = self.find_one(entry_id=entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    def find_many(self, **filters: Any) -> List[Entry]:
        with self._session() as session:
            query = self._apply_filters(session.query(QueueEntryRecord), **filters)
            records = query.order_by(
                QueueEntryRecord.station_id,
                QueueEntryRecord.position,
                QueueEntryRecord.id,
            ).all()
            return [self._to_entry(r) for r in records]

    def find_waiting(self) -> List[Entry]:
        """按队列顺序返回所有 waiting 条目"""
        entries = self.find_many(status=EntryStatus.Waiting)
        entries.sort(key=lambda e: (e.position, e.id))
        return entries

    def count(self, **filters: Any) -> int:
        with self._session() as session:
            query = self._apply_filters(
                session.query(func.count(QueueEntryRecord.id)), **filters
            )
            return int(query.scalar() or 0)

    def update(self, entry_id: int, **patch: Any) -> Entry:
        unknown = set(patch) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown entry fields: {sorted(unknown)}")

        with self._session() as session:
            record = session.get(QueueEntryRecord, entry_id)
            if record is None:
                raise EntryNotFound(entry_id)
            for key, value in patch.items():
                if key == "status":
                    value = EntryStatus(value).value
                setattr(record, key, value)
            session.flush()
            entry = self._to_entry(record)

        logger.debug("更新队列条目 id=%s patch=%s", entry_id, sorted(patch))
        return entry

    def delete(self, entry_id: int) -> bool:
        with self._session() as session:
            deleted = (
                session.query(QueueEntryRecord)
                .filter(QueueEntryRecord.id == entry_id)
                .delete(synchronize_session=False)
            )
        return deleted > 0

    def delete_many(self, **filters: Any) -> int:
        with self._session() as session:
            query = self._apply_filters(session.query(QueueEntryRecord), **filters)
            return query.delete(synchronize_session=False)


class UserDirectory:
    """用户目录（只读查询 + 管理端建档）"""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def _to_info(record: UserRecord) -> UserInfo:
        return UserInfo(id=record.id, name=record.name or "User", email=record.email)

    def resolve(self, user_id: int) -> Optional[UserInfo]:
        """返回用户的姓名与邮箱，不存在时返回 None"""
        session = self.db_manager.get_session()
        try:
            record = session.get(UserRecord, user_id)
            return self._to_info(record) if record is not None else None
        except SQLAlchemyError as e:
            raise StoreError(f"User lookup failed: {e}") from e
        finally:
            session.close()

    def exists(self, user_id: int) -> bool:
        return self.resolve(user_id) is not None

    def find_by_email(self, email: str) -> Optional[UserInfo]:
        session = self.db_manager.get_session()
        try:
            record = (
                session.query(UserRecord).filter(UserRecord.email == email).first()
            )
            return self._to_info(record) if record is not None else None
        except SQLAlchemyError as e:
            raise StoreError(f"User lookup failed: {e}") from e
        finally:
            session.close()

    def create_user(self, email: str, name: Optional[str] = None) -> UserInfo:
        session = self.db_manager.get_session()
        try:
            record = UserRecord(email=email, name=name or email.split("@")[0])
            session.add(record)
            session.commit()
            session.refresh(record)
            logger.info("创建用户 id=%s email=%s", record.id, email)
            return self._to_info(record)
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f"User creation failed: {e}") from e
        finally:
            session.close()
