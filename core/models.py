"""
Domain records shared by the dispatch components.

Rows from the store are converted into these in database/queries.py; nothing
else in the core touches raw database rows.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    ON_THE_WAY = "on_the_way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Statuses in which a delivery partner may be assigned
PARTNER_STATUSES = frozenset({
    OrderStatus.ACCEPTED, OrderStatus.PREPARING, OrderStatus.READY,
    OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY, OrderStatus.DELIVERED,
})


class Actor(str, Enum):
    CUSTOMER = "customer"
    SHOP = "shop"
    DELIVERY_PARTNER = "delivery_partner"


class Action(str, Enum):
    ACCEPT = "accept"
    PREPARE = "prepare"
    MARK_READY = "mark_ready"
    CANCEL = "cancel"
    PICK_UP = "pick_up"
    START_DELIVERY = "start_delivery"
    DELIVER = "deliver"


class NotificationType(str, Enum):
    NEW_ORDER = "new_order"
    DELIVERY_OPPORTUNITY = "delivery_opportunity"
    STATUS_UPDATE = "order_update"
    NO_PARTNERS_NEARBY = "no_partners_nearby"


@dataclass(frozen=True)
class OrderItem:
    """A line item; unit_price is the price at the moment the order was placed."""
    product_ref: str
    quantity: int
    unit_price: float

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive, got {self.quantity}")
        if self.unit_price < 0:
            raise ValueError(f"unit_price must not be negative, got {self.unit_price}")

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> dict[str, Any]:
        return {"product_ref": self.product_ref, "quantity": self.quantity, "unit_price": self.unit_price}


@dataclass(frozen=True)
class Location:
    address: str
    lat: float | None = None
    lng: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass
class Order:
    id: str
    customer_id: str
    shop_id: str
    items: tuple[OrderItem, ...]
    total_amount: float
    status: OrderStatus
    pickup: Location
    delivery: Location
    created_at: datetime
    updated_at: datetime
    delivery_partner_id: str | None = None
    estimated_delivery_time: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "shop_id": self.shop_id,
            "delivery_partner_id": self.delivery_partner_id,
            "items": [item.to_dict() for item in self.items],
            "total_amount": self.total_amount,
            "status": self.status.value,
            "pickup": {"address": self.pickup.address, "lat": self.pickup.lat, "lng": self.pickup.lng},
            "delivery": {"address": self.delivery.address, "lat": self.delivery.lat, "lng": self.delivery.lng},
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "estimated_delivery_time": self.estimated_delivery_time.isoformat() if self.estimated_delivery_time else None,
        }


@dataclass(frozen=True)
class LocationSample:
    order_id: str
    partner_id: str
    timestamp: datetime
    lat: float
    lng: float
    status: OrderStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "partner_id": self.partner_id,
            "timestamp": self.timestamp.isoformat(),
            "lat": self.lat,
            "lng": self.lng,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class PartnerSnapshot:
    """Read-only view of a delivery partner from the partner directory."""
    id: str
    is_online: bool
    lat: float | None
    lng: float | None
    full_name: str | None = None


@dataclass(frozen=True)
class ShopSnapshot:
    id: str
    name: str | None
    category: str | None
    lat: float | None
    lng: float | None


@dataclass
class Notification:
    recipient_id: str
    type: NotificationType
    title: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    read: bool = False
    id: int | None = None


@dataclass(frozen=True)
class StatusChanged:
    """Emitted by OrderStateMachine after every applied transition."""
    order: Order
    old_status: OrderStatus
    new_status: OrderStatus
    actor: Actor
    actor_id: str
