"""通知网关

核心只依赖 NotificationGateway 接口；实际投递方式（邮件、推送）由外部实现。
默认的 LoggingNotificationGateway 仅渲染主题并写日志。
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from ..models.entry import UserInfo

logger = logging.getLogger("evqueue.notifications")


class NotificationGateway(ABC):
    """四类通知的投递接口，全部为异步方法，失败时直接抛出由调用方记录"""

    @abstractmethod
    async def send_station_ready(self, recipient: UserInfo, station_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def send_almost_complete(
        self, recipient: UserInfo, station_name: str, minutes_remaining: int
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def send_expired(
        self, recipient: UserInfo, station_name: str, overtime_minutes: int
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def send_complete(
        self, recipient: UserInfo, station_name: str, duration_minutes: int
    ) -> None:
        raise NotImplementedError


class LoggingNotificationGateway(NotificationGateway):
    """只写日志的通知网关（未接入邮件服务时使用）"""

    def __init__(self, sender_name: str = "EV Charging Station"):
        self.sender_name = sender_name

    def _log(self, recipient: UserInfo, subject: str, body: str) -> None:
        logger.info(
            "[%s] to=%s <%s> subject=%r %s",
            self.sender_name,
            recipient.name,
            recipient.email,
            subject,
            body,
        )

    async def send_station_ready(self, recipient: UserInfo, station_name: str) -> None:
        self._log(
            recipient,
            "Your EV Charger is Ready!",
            f"{station_name} is now available and reserved for you.",
        )

    async def send_almost_complete(
        self, recipient: UserInfo, station_name: str, minutes_remaining: int
    ) -> None:
        self._log(
            recipient,
            "Charging Almost Complete - Please Prepare",
            f"{station_name} has about {minutes_remaining} minutes remaining.",
        )

    async def send_expired(
        self, recipient: UserInfo, station_name: str, overtime_minutes: int
    ) -> None:
        self._log(
            recipient,
            "Charging Time Expired - Please Move Your Vehicle",
            f"{station_name} session is {overtime_minutes} minutes over time.",
        )

    async def send_complete(
        self, recipient: UserInfo, station_name: str, duration_minutes: int
    ) -> None:
        self._log(
            recipient,
            "Charging Session Complete",
            f"Charged {duration_minutes} minutes at {station_name}.",
        )
