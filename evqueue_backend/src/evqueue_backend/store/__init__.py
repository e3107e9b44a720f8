"""存储层：队列条目仓储与用户目录"""

from .repositories import EntryRepository, UserDirectory

__all__ = ["EntryRepository", "UserDirectory"]
