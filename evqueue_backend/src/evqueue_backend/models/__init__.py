from .entry import (
    ACTIVE_STATUSES,
    OPEN_STATUSES,
    UNASSIGNED_STATION,
    Entry,
    EntryStatus,
    UserInfo,
)
from .queue_entry import Base, DatabaseManager, QueueEntryRecord, UserRecord

__all__ = [
    "ACTIVE_STATUSES",
    "OPEN_STATUSES",
    "UNASSIGNED_STATION",
    "Entry",
    "EntryStatus",
    "UserInfo",
    "Base",
    "DatabaseManager",
    "QueueEntryRecord",
    "UserRecord",
]
