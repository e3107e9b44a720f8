"""实时事件推送"""

from .bus import (
    Channel,
    ChannelClosed,
    EventBus,
    EventType,
    QueueChannel,
    Subscriber,
    encode_event,
    make_event,
)

__all__ = [
    "Channel",
    "ChannelClosed",
    "EventBus",
    "EventType",
    "QueueChannel",
    "Subscriber",
    "encode_event",
    "make_event",
]
