"""
Pydantic request/response models of the HTTP API.

Kept separate from core.models so the wire contract can evolve without
touching the domain dataclasses.
"""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# --- Request Schemas ---

class OrderItemSchema(BaseModel):
    product_ref: str
    quantity: int = Field(gt=0)
    unit_price: float = Field(ge=0)


class OrderCreateRequest(BaseModel):
    customer_id: str
    shop_id: str
    items: list[OrderItemSchema] = Field(min_length=1)
    delivery_address: str
    delivery_lat: float | None = Field(default=None, ge=-90, le=90)
    delivery_lng: float | None = Field(default=None, ge=-180, le=180)
    pickup_address: str | None = None
    pickup_lat: float | None = Field(default=None, ge=-90, le=90)
    pickup_lng: float | None = Field(default=None, ge=-180, le=180)
    estimated_delivery_time: datetime | None = None


class TransitionRequest(BaseModel):
    actor: str
    actor_id: str
    action: str


class LocationRequest(BaseModel):
    partner_id: str
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    timestamp: datetime | None = None


# --- Response Schemas ---

class OrderCreatedResponse(BaseModel):
    id: str
    status: str


class TransitionResponse(BaseModel):
    status: str
    changed: bool


class LocationResponse(BaseModel):
    accepted: bool
    reason: str | None = None


class ShopResponse(BaseModel):
    id: str
    name: str | None = None
    category: str | None = None
    lat: float
    lng: float
    distance_km: float


class ErrorResponse(BaseModel):
    error: str
    message: str


class OrderResponse(BaseModel):
    id: str
    customer_id: str
    shop_id: str
    delivery_partner_id: str | None = None
    items: list[OrderItemSchema]
    total_amount: float
    status: str
    pickup: dict[str, Any]
    delivery: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    estimated_delivery_time: datetime | None = None


class TrackPointResponse(BaseModel):
    partner_id: str
    lat: float
    lng: float
    status: str
    timestamp: datetime


class AvailableOrderResponse(BaseModel):
    order: OrderResponse
    distance_km: float
