from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, model_validator

class EventCreate(BaseModel):
    title: str = Field(min_length=1)
    slug: str | None = None  # derived from title when empty
    location: str = ""
    description: str = ""
    event_date: datetime
    is_published: bool = True

class PriceTierIn(BaseModel):
    name: str = Field(min_length=1)
    price: Decimal = Field(ge=0)
    valid_from: datetime
    valid_to: datetime

    @model_validator(mode="after")
    def _check_window(self) -> "PriceTierIn":
        if self.valid_from > self.valid_to:
            raise ValueError("valid_from must not be after valid_to")
        return self

class DistanceCreate(BaseModel):
    name: str = Field(min_length=1)
    price: Decimal = Field(ge=0)
    capacity_limit: int = Field(default=0, ge=0)  # 0 = unlimited
    start_time: datetime | None = None
    # None keeps existing tiers on update; [] removes them
    tiers: list[PriceTierIn] | None = None

class RegistrationCreate(BaseModel):
    distance_id: int

class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    slug: str | None = None
    description: str = ""
    price: Decimal = Field(ge=0)
    stock: int = Field(default=0, ge=0)

class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    size: str | None = None

class OrderCreate(BaseModel):
    shipping_name: str = Field(min_length=1)
    shipping_email: str = Field(min_length=3)
    shipping_address: str = ""
    payment_method: str = "TRANSFER"  # TRANSFER | CASH
    items: list[OrderItemIn] = Field(min_length=1)
