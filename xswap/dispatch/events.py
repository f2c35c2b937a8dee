"""
Dispatch events.

Three event kinds travel over the channel. On the wire each is a JSON object
{"event": <name>, "topic": <topic>, "data": {...}}.

Terminal reports carry the resolver's claim token; the public form of a
message (what the hub broadcasts) never does.
"""

from dataclasses import dataclass
from typing import Dict, Any, Union

from ..core import OrderSettlementStatus, SettlementPhase

TOPIC_NEW_ORDERS = "orders.new"
TOPIC_SETTLEMENTS = "orders.settled"


@dataclass
class NewOrder:
    """A maker-signed order, ready for resolvers."""
    order: Dict[str, Any]           # Order.to_dict()
    signature: str

    EVENT = "newOrder"
    TOPIC = TOPIC_NEW_ORDERS

    @property
    def order_id(self) -> str:
        return self.order["order_id"]

    @property
    def src_chain_id(self) -> int:
        return int(self.order["src_chain_id"])

    def payload(self) -> Dict[str, Any]:
        return {"order": self.order, "signature": self.signature}


@dataclass
class OrderFilled:
    """Terminal success reported by the owning resolver."""
    status: OrderSettlementStatus

    EVENT = "orderFilled"
    TOPIC = TOPIC_SETTLEMENTS

    @property
    def order_id(self) -> str:
        return self.status.order_id

    def payload(self) -> Dict[str, Any]:
        return self.status.to_dict(include_token=True)


@dataclass
class OrderFailed:
    """Terminal failure reported by the owning resolver."""
    status: OrderSettlementStatus

    EVENT = "orderFailed"
    TOPIC = TOPIC_SETTLEMENTS

    @property
    def order_id(self) -> str:
        return self.status.order_id

    def payload(self) -> Dict[str, Any]:
        return self.status.to_dict(include_token=True)


Event = Union[NewOrder, OrderFilled, OrderFailed]


def terminal_event(status: OrderSettlementStatus) -> Event:
    """Event announcing a terminal settlement status."""
    if status.phase == SettlementPhase.FILLED:
        return OrderFilled(status)
    if status.phase == SettlementPhase.FAILED:
        return OrderFailed(status)
    raise ValueError(f"Status of {status.order_id} is not terminal: {status.phase.value}")


def to_message(event: Event, public: bool = False) -> Dict[str, Any]:
    data = event.payload()
    if public:
        data.pop("claim_token", None)
    return {"event": event.EVENT, "topic": event.TOPIC, "data": data}


def from_message(message: Dict[str, Any]) -> Event:
    """Decode a wire message. Unknown or malformed messages raise ValueError."""
    name = message.get("event")
    data = message.get("data")
    if not isinstance(data, dict):
        raise ValueError(f"Event {name!r} has no data object")
    try:
        if name == NewOrder.EVENT:
            return NewOrder(order=data["order"], signature=data["signature"])
        if name == OrderFilled.EVENT:
            return OrderFilled(OrderSettlementStatus.from_dict(data))
        if name == OrderFailed.EVENT:
            return OrderFailed(OrderSettlementStatus.from_dict(data))
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed {name} event: {e}")
    raise ValueError(f"Unknown event: {name!r}")
