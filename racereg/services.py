from __future__ import annotations

import logging
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, and_, func
from sqlalchemy.orm import Session, selectinload
from starlette.concurrency import run_in_threadpool

from . import models
from .csv_io import CsvColumn, export_to_csv, split_lines
from .locks import LockBackend
from .money import quantize_money, to_decimal
from .pricing import apply_membership_discount, resolve_active_tier_name, resolve_effective_price
from .reconciliation import (
    ImportResult,
    OrderPaymentStore,
    RegistrationPaymentStore,
    ORDER_ID_ALIASES,
    ORDER_STATUS_ALIASES,
    REGISTRATION_ID_ALIASES,
    REGISTRATION_STATUS_ALIASES,
    import_payments,
    normalize_order_payment_status,
    normalize_registration_payment_status,
    resolve_mapping,
)
from .schemas import DistanceCreate, EventCreate, OrderCreate, ProductCreate
from .security import hash_password, verify_password
from .settings import settings
from .utils import as_utc, format_reference, slugify

log = logging.getLogger(__name__)


class CapacityError(ValueError):
    """The distance has no free places left."""


class OutOfStockError(ValueError):
    """A product cannot cover the requested quantity."""


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)

# ---------------------------
# Users / auth
# ---------------------------

def ensure_admin_user(session: Session) -> None:
    """Ensure the admin account from settings exists in DB."""
    existing = session.execute(
        select(models.User).where(models.User.email == settings.RACEREG_ADMIN_EMAIL)
    ).scalar_one_or_none()

    if existing:
        if existing.role != "ADMIN" or not existing.is_active:
            existing.role = "ADMIN"
            existing.is_active = 1
            session.commit()
        return

    u = models.User(
        email=settings.RACEREG_ADMIN_EMAIL,
        password_hash=hash_password(settings.RACEREG_ADMIN_PASSWORD),
        first_name="Admin",
        last_name="",
        role="ADMIN",
        is_active=1,
    )
    session.add(u)
    session.commit()

def create_user(session: Session, email: str, password: str, first_name: str = "", last_name: str = "", role: str = "USER") -> models.User:
    if session.execute(select(models.User).where(models.User.email == email)).scalar_one_or_none():
        raise ValueError("Email already registered")
    u = models.User(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=role,
        is_active=1,
    )
    session.add(u)
    session.commit()
    return u

def authenticate_user(session: Session, email: str, password: str) -> Optional[models.User]:
    u = session.execute(select(models.User).where(models.User.email == email)).scalar_one_or_none()
    if not u or not u.is_active:
        return None
    if verify_password(password, u.password_hash):
        return u
    return None

def get_user(session: Session, user_id: int) -> Optional[models.User]:
    return session.get(models.User, user_id)

# ---------------------------
# Events / distances
# ---------------------------

def create_event(session: Session, payload: EventCreate) -> models.Event:
    slug = slugify(payload.slug or payload.title)
    if not slug:
        raise ValueError("Event slug cannot be empty")
    if session.execute(select(models.Event).where(models.Event.slug == slug)).scalar_one_or_none():
        raise ValueError("Event already exists")
    ev = models.Event(
        slug=slug,
        title=payload.title,
        location=payload.location,
        description=payload.description,
        event_date=as_utc(payload.event_date),
        is_published=payload.is_published,
    )
    session.add(ev)
    session.commit()
    return ev

def list_published_events(session: Session):
    return session.execute(
        select(models.Event).where(models.Event.is_published.is_(True)).order_by(models.Event.event_date.asc())
    ).scalars().all()

def get_event(session: Session, event_id: int) -> Optional[models.Event]:
    return session.get(models.Event, event_id)

def get_event_by_slug(session: Session, slug: str) -> Optional[models.Event]:
    return session.execute(
        select(models.Event)
        .where(models.Event.slug == slug)
        .options(selectinload(models.Event.distances).selectinload(models.Distance.price_tiers))
    ).scalar_one_or_none()

def _tier_rows(payload: DistanceCreate) -> list[models.PriceTier]:
    return [
        models.PriceTier(
            name=t.name,
            price=t.price,
            valid_from=as_utc(t.valid_from),
            valid_to=as_utc(t.valid_to),
        )
        for t in payload.tiers or []
    ]

def create_distance(session: Session, event_id: int, payload: DistanceCreate) -> models.Distance:
    if not session.get(models.Event, event_id):
        raise ValueError("Event not found")
    d = models.Distance(
        event_id=event_id,
        name=payload.name,
        price=payload.price,
        capacity_limit=payload.capacity_limit,
        start_time=as_utc(payload.start_time) if payload.start_time else None,
        price_tiers=_tier_rows(payload),
    )
    session.add(d)
    session.commit()
    return d

def update_distance(session: Session, distance_id: int, payload: DistanceCreate) -> models.Distance:
    d = session.get(models.Distance, distance_id)
    if not d:
        raise ValueError("Distance not found")
    d.name = payload.name
    d.price = payload.price
    d.capacity_limit = payload.capacity_limit
    if payload.start_time:
        d.start_time = as_utc(payload.start_time)
    if payload.tiers is not None:
        # tier lists are short; replace instead of diffing
        d.price_tiers.clear()
        session.flush()
        d.price_tiers.extend(_tier_rows(payload))
    session.commit()
    return d

def delete_distance(session: Session, distance_id: int) -> None:
    d = session.get(models.Distance, distance_id)
    if not d:
        raise ValueError("Distance not found")
    if d.registrations:
        raise ValueError("Distance has registrations")
    session.delete(d)
    session.commit()

def count_active_registrations(session: Session, distance_id: int) -> int:
    return session.execute(
        select(func.count())
        .select_from(models.Registration)
        .where(
            and_(
                models.Registration.distance_id == distance_id,
                models.Registration.registration_status != "CANCELLED",
            )
        )
    ).scalar_one()

@dataclass
class DistanceView:
    id: int
    name: str
    base_price: Decimal
    effective_price: Decimal
    tier_name: Optional[str]
    capacity_limit: int
    registered: int

    @property
    def remaining(self) -> Optional[int]:
        if self.capacity_limit <= 0:
            return None
        return max(0, self.capacity_limit - self.registered)

def distance_views(session: Session, event: models.Event, now: Optional[datetime] = None) -> list[DistanceView]:
    at = _now(now)
    return [
        DistanceView(
            id=d.id,
            name=d.name,
            base_price=to_decimal(d.price),
            effective_price=resolve_effective_price(d, at),
            tier_name=resolve_active_tier_name(d, at),
            capacity_limit=d.capacity_limit,
            registered=count_active_registrations(session, d.id),
        )
        for d in event.distances
    ]

# ---------------------------
# Registrations
# ---------------------------

def _membership_tier(user: models.User, at: datetime) -> Optional[models.MembershipTier]:
    if user.membership_tier is None:
        return None
    if user.membership_end is not None and as_utc(user.membership_end) < at:
        return None
    return user.membership_tier

def _insert_registration(session: Session, user_id: int, distance_id: int, at: datetime) -> models.Registration:
    distance = session.get(models.Distance, distance_id)
    if not distance:
        raise ValueError("Distance not found")
    user = session.get(models.User, user_id)
    if not user:
        raise ValueError("User not found")

    existing = session.execute(
        select(models.Registration).where(
            and_(
                models.Registration.user_id == user_id,
                models.Registration.distance_id == distance_id,
            )
        )
    ).scalar_one_or_none()
    if existing:
        raise ValueError("Already registered for this distance")

    if distance.capacity_limit > 0 and count_active_registrations(session, distance_id) >= distance.capacity_limit:
        raise CapacityError("Distance is full")

    price = resolve_effective_price(distance, at)
    price = apply_membership_discount(price, _membership_tier(user, at))

    reg = models.Registration(
        registration_number=uuid.uuid4().hex,
        user_id=user_id,
        distance_id=distance_id,
        registration_status="PENDING",
        payment_status="UNPAID",
        final_price=quantize_money(price),
        tier_name=resolve_active_tier_name(distance, at),
        created_at=at,
    )
    session.add(reg)
    session.flush()
    reg.registration_number = format_reference(settings.REGISTRATION_NUMBER_PREFIX, at.year, reg.id)
    session.commit()
    return reg

async def register_for_distance(
    session: Session,
    locks: LockBackend,
    *,
    user_id: int,
    distance_id: int,
    now: Optional[datetime] = None,
) -> models.Registration:
    """Create a registration, holding ``registration:<distance_id>`` across the capacity check and insert.

    The lock is taken on the event loop; the database work runs in the threadpool.
    """
    at = _now(now)
    async with locks.hold(f"registration:{distance_id}"):
        reg = await run_in_threadpool(_insert_registration, session, user_id, distance_id, at)
    log.info("Registration %s created for distance %s", reg.registration_number, distance_id)
    return reg

def list_user_registrations(session: Session, user_id: int):
    return session.execute(
        select(models.Registration)
        .where(models.Registration.user_id == user_id)
        .options(selectinload(models.Registration.distance).selectinload(models.Distance.event))
        .order_by(models.Registration.created_at.desc())
    ).scalars().all()

def list_event_registrations(session: Session, event_id: int):
    return session.execute(
        select(models.Registration)
        .join(models.Distance)
        .where(models.Distance.event_id == event_id)
        .options(selectinload(models.Registration.user), selectinload(models.Registration.distance))
        .order_by(models.Registration.id.asc())
    ).scalars().all()

# ---------------------------
# Shop
# ---------------------------

def create_product(session: Session, payload: ProductCreate) -> models.Product:
    slug = slugify(payload.slug or payload.name)
    if session.execute(select(models.Product).where(models.Product.slug == slug)).scalar_one_or_none():
        raise ValueError("Product already exists")
    p = models.Product(
        slug=slug,
        name=payload.name,
        description=payload.description,
        price=payload.price,
        stock=payload.stock,
        is_active=True,
    )
    session.add(p)
    session.commit()
    return p

def list_active_products(session: Session):
    return session.execute(
        select(models.Product).where(models.Product.is_active.is_(True)).order_by(models.Product.name.asc())
    ).scalars().all()

def _place_order(
    session: Session,
    payload: OrderCreate,
    wanted: dict[int, int],
    user_id: Optional[int],
    at: datetime,
) -> models.Order:
    products: dict[int, models.Product] = {}
    for product_id, qty in wanted.items():
        p = session.get(models.Product, product_id)
        if not p or not p.is_active:
            raise ValueError(f"Product {product_id} not found")
        # the lock serializes writers but another session may hold a stale copy
        session.refresh(p)
        if p.stock < qty:
            raise OutOfStockError(f"Not enough stock for {p.name}")
        products[product_id] = p

    order = models.Order(
        order_number=uuid.uuid4().hex,
        user_id=user_id,
        shipping_name=payload.shipping_name,
        shipping_email=payload.shipping_email,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        status="PENDING",
        total_amount=Decimal(0),
        created_at=at,
    )
    total = Decimal(0)
    for item in payload.items:
        p = products[item.product_id]
        unit = to_decimal(p.price)
        order.items.append(
            models.OrderItem(product_id=p.id, quantity=item.quantity, size=item.size, unit_price=unit)
        )
        total += unit * item.quantity
    for product_id, qty in wanted.items():
        products[product_id].stock -= qty
    order.total_amount = quantize_money(total)

    session.add(order)
    session.flush()
    order.order_number = format_reference(settings.ORDER_NUMBER_PREFIX, at.year, order.id)
    session.commit()
    return order

async def create_order(
    session: Session,
    locks: LockBackend,
    payload: OrderCreate,
    *,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.Order:
    """Create an order and decrement stock.

    Stock locks are taken in ascending product id so two orders over the same
    products cannot wait on each other.
    """
    at = _now(now)
    if payload.payment_method not in ("TRANSFER", "CASH"):
        raise ValueError("payment_method must be TRANSFER or CASH")

    wanted: dict[int, int] = {}
    for item in payload.items:
        wanted[item.product_id] = wanted.get(item.product_id, 0) + item.quantity

    async with AsyncExitStack() as stack:
        for product_id in sorted(wanted):
            await stack.enter_async_context(locks.hold(f"stock:{product_id}"))
        order = await run_in_threadpool(_place_order, session, payload, wanted, user_id, at)
    log.info("Order %s created (%s items)", order.order_number, len(order.items))
    return order

def get_order_by_number(session: Session, order_number: str) -> Optional[models.Order]:
    return session.execute(
        select(models.Order)
        .where(models.Order.order_number == order_number)
        .options(selectinload(models.Order.items).selectinload(models.OrderItem.product))
    ).scalar_one_or_none()

def list_user_orders(session: Session, user_id: int):
    return session.execute(
        select(models.Order).where(models.Order.user_id == user_id).order_by(models.Order.created_at.desc())
    ).scalars().all()

def list_orders(session: Session):
    return session.execute(
        select(models.Order)
        .options(selectinload(models.Order.items).selectinload(models.OrderItem.product))
        .order_by(models.Order.created_at.desc())
    ).scalars().all()

# ---------------------------
# CSV export / payment import
# ---------------------------

def _items_summary(order: models.Order) -> str:
    return ", ".join(f"{i.quantity}x {i.product.name} ({i.size or '-'})" for i in order.items)

REGISTRATION_EXPORT_COLUMNS = [
    CsvColumn("Registration Number", "registration_number"),
    CsvColumn("Name", lambda r: r.user.full_name),
    CsvColumn("Email", lambda r: r.user.email),
    CsvColumn("Distance", lambda r: r.distance.name),
    CsvColumn("Price Tier", "tier_name"),
    CsvColumn("Price", "final_price"),
    CsvColumn("Status", "registration_status"),
    CsvColumn("Payment Status", "payment_status"),
    CsvColumn("Registered At", "created_at"),
]

ORDER_EXPORT_COLUMNS = [
    CsvColumn("Order Number", "order_number"),
    CsvColumn("Date", lambda o: as_utc(o.created_at).date()),
    CsvColumn("Customer Name", "shipping_name"),
    CsvColumn("Customer Email", "shipping_email"),
    CsvColumn("Items", _items_summary),
    CsvColumn("Total", "total_amount"),
    CsvColumn("Status", "status"),
    CsvColumn("Payment Method", "payment_method"),
]

def export_event_registrations_csv(session: Session, event_id: int) -> str:
    return export_to_csv(
        list_event_registrations(session, event_id),
        REGISTRATION_EXPORT_COLUMNS,
        delimiter=settings.CSV_EXPORT_DELIMITER,
        line_terminator=settings.CSV_LINE_TERMINATOR,
    )

def export_orders_csv(session: Session) -> str:
    return export_to_csv(
        list_orders(session),
        ORDER_EXPORT_COLUMNS,
        delimiter=settings.CSV_EXPORT_DELIMITER,
        line_terminator=settings.CSV_LINE_TERMINATOR,
    )

async def import_registration_payments(session: Session, locks: LockBackend, csv_text: str) -> ImportResult:
    delimiter, mapping = resolve_mapping(
        split_lines(csv_text),
        REGISTRATION_ID_ALIASES,
        REGISTRATION_STATUS_ALIASES,
        normalize_registration_payment_status,
    )
    async with locks.hold("import:registrations"):
        return await import_payments(csv_text, delimiter, mapping, RegistrationPaymentStore(session))

async def import_order_payments(session: Session, locks: LockBackend, csv_text: str) -> ImportResult:
    delimiter, mapping = resolve_mapping(
        split_lines(csv_text),
        ORDER_ID_ALIASES,
        ORDER_STATUS_ALIASES,
        normalize_order_payment_status,
        require_status=False,
    )
    async with locks.hold("import:orders"):
        return await import_payments(csv_text, delimiter, mapping, OrderPaymentStore(session))
