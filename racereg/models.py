from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from sqlalchemy import String, Integer, Numeric, Boolean, Text, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

PAYMENT_STATUSES = ("UNPAID", "PAID", "PARTIALLY_PAID", "REFUNDED")
REGISTRATION_STATUSES = ("PENDING", "CONFIRMED", "CANCELLED")
ORDER_STATUSES = ("PENDING", "PAID", "SHIPPED", "CANCELLED")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MembershipTier(Base):
    __tablename__ = "membership_tiers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    discount_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    duration_months: Mapped[int] = mapped_column(Integer, nullable=False, default=12)


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    first_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    role: Mapped[str] = mapped_column(String, nullable=False, default="USER")  # ADMIN | STAFF | USER
    is_active: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    membership_tier_id: Mapped[int | None] = mapped_column(ForeignKey("membership_tiers.id", ondelete="SET NULL"), nullable=True)
    membership_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    membership_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    membership_tier: Mapped[Optional["MembershipTier"]] = relationship()
    registrations: Mapped[list["Registration"]] = relationship(back_populates="user")
    orders: Mapped[list["Order"]] = relationship(back_populates="user")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Event(Base):
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    location: Mapped[str] = mapped_column(String, nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    event_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    distances: Mapped[list["Distance"]] = relationship(
        back_populates="event", cascade="all, delete-orphan", order_by="Distance.id"
    )


class Distance(Base):
    __tablename__ = "distances"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # base price, used when no tier covers the instant
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    capacity_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 0 = unlimited
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    event: Mapped["Event"] = relationship(back_populates="distances")
    # storage order is the resolution order
    price_tiers: Mapped[list["PriceTier"]] = relationship(
        back_populates="distance", cascade="all, delete-orphan", order_by="PriceTier.id"
    )
    registrations: Mapped[list["Registration"]] = relationship(back_populates="distance")

    __table_args__ = (
        Index("ix_distances_event", "event_id"),
    )


class PriceTier(Base):
    __tablename__ = "price_tiers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    distance_id: Mapped[int] = mapped_column(ForeignKey("distances.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_to: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    distance: Mapped["Distance"] = relationship(back_populates="price_tiers")


class Registration(Base):
    __tablename__ = "registrations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration_number: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    distance_id: Mapped[int] = mapped_column(ForeignKey("distances.id", ondelete="CASCADE"), nullable=False)
    registration_status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="UNPAID")
    final_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tier_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped["User"] = relationship(back_populates="registrations")
    distance: Mapped["Distance"] = relationship(back_populates="registrations")

    __table_args__ = (
        UniqueConstraint("user_id", "distance_id", name="uq_registration_user_distance"),
        Index("ix_registrations_distance", "distance_id"),
    )


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    shipping_name: Mapped[str] = mapped_column(String, nullable=False)
    shipping_email: Mapped[str] = mapped_column(String, nullable=False)
    shipping_address: Mapped[str] = mapped_column(String, nullable=False, default="")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    payment_method: Mapped[str] = mapped_column(String, nullable=False, default="TRANSFER")  # TRANSFER | CASH
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[Optional["User"]] = relationship(back_populates="orders")
    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    size: Mapped[str | None] = mapped_column(String, nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order: Mapped["Order"] = relationship(back_populates="items")
    product: Mapped["Product"] = relationship()

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class AppLock(Base):
    """Lease row for the database lock backend."""

    __tablename__ = "app_locks"
    key: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
