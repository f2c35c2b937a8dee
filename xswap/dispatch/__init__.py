"""Order dispatch: events, local channel, WebSocket hub and client."""

from .events import (
    NewOrder,
    OrderFilled,
    OrderFailed,
    terminal_event,
    to_message,
    from_message,
    TOPIC_NEW_ORDERS,
    TOPIC_SETTLEMENTS,
)
from .channel import DispatchChannel, LocalDispatchChannel, Subscription
from .client import DispatchClient, ConnectionState

__all__ = [
    "NewOrder",
    "OrderFilled",
    "OrderFailed",
    "terminal_event",
    "to_message",
    "from_message",
    "TOPIC_NEW_ORDERS",
    "TOPIC_SETTLEMENTS",
    "DispatchChannel",
    "LocalDispatchChannel",
    "Subscription",
    "DispatchClient",
    "ConnectionState",
]
