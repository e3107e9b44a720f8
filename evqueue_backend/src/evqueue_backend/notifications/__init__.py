"""用户通知"""

from .gateway import LoggingNotificationGateway, NotificationGateway
from .notifier import Notifier

__all__ = ["LoggingNotificationGateway", "NotificationGateway", "Notifier"]
