"""Date-windowed price resolution for race distances.

A distance carries a base ``price`` and an ordered sequence of price tiers,
each valid between ``valid_from`` and ``valid_to`` (both inclusive). Tiers are
scanned in the order given and the first one covering the instant wins, so
overlapping tiers resolve by position, not by window width or start date.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from .money import floor_units, to_decimal
from .utils import as_utc


class TierLike(Protocol):
    name: Optional[str]
    price: Decimal
    valid_from: datetime
    valid_to: datetime


class DistanceLike(Protocol):
    price: Decimal
    price_tiers: Iterable[TierLike]


class DiscountLike(Protocol):
    discount_amount: Optional[Decimal]
    discount_percentage: Optional[Decimal]


def _matching_tier(distance: DistanceLike, at: Optional[datetime]) -> Optional[TierLike]:
    instant = as_utc(at) if at is not None else datetime.now(timezone.utc)
    for tier in distance.price_tiers or ():
        if as_utc(tier.valid_from) <= instant <= as_utc(tier.valid_to):
            return tier
    return None


def resolve_effective_price(distance: DistanceLike, at: Optional[datetime] = None) -> Decimal:
    tier = _matching_tier(distance, at)
    if tier is not None:
        return to_decimal(tier.price)
    return to_decimal(distance.price)


def resolve_active_tier_name(distance: DistanceLike, at: Optional[datetime] = None) -> Optional[str]:
    tier = _matching_tier(distance, at)
    if tier is None:
        return None
    return tier.name or None


def apply_membership_discount(price: Decimal, tier: Optional[DiscountLike]) -> Decimal:
    """Apply a membership discount to a resolved price.

    A fixed amount takes precedence over a percentage. Amount discounts never
    go below zero; percentage discounts are rounded down to a whole unit.
    """
    if tier is None:
        return price
    amount = to_decimal(tier.discount_amount or 0)
    percentage = to_decimal(tier.discount_percentage or 0)
    if amount > 0:
        return max(Decimal(0), price - amount)
    if percentage > 0:
        return floor_units(price * (1 - percentage / 100))
    return price
