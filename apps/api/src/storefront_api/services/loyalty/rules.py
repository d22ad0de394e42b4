"""Loyalty accrual, redemption and tier math."""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, Optional

from storefront_api.core.settings import settings


LoyaltyTierName = Literal["Bronze", "Silver", "Gold", "Platinum"]

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class _TierBand:
    name: LoyaltyTierName
    minimum: int
    next_threshold: Optional[int]


TIERS: tuple[_TierBand, ...] = (
    _TierBand("Bronze", 0, 1_000),
    _TierBand("Silver", 1_000, 5_000),
    _TierBand("Gold", 5_000, 20_000),
    _TierBand("Platinum", 20_000, None),
)


@dataclass(frozen=True)
class LoyaltyUiSnapshot:
    """Balance view rendered by the storefront account pages."""

    balance: int
    points: int
    tier: LoyaltyTierName
    next_tier_at: Optional[int]

    def as_payload(self) -> dict[str, Any]:
        return {
            "balance": self.balance,
            "points": self.points,
            "tier": self.tier,
            "nextTierAt": self.next_tier_at,
        }


def to_int(value: Any, fallback: int = 0) -> int:
    """Truncate numeric-ish input toward zero, falling back on junk."""

    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return int(number)


def compute_loyalty(points_balance: Any) -> LoyaltyUiSnapshot:
    balance = max(0, to_int(points_balance))
    tier = next((band for band in reversed(TIERS) if balance >= band.minimum), TIERS[0])
    next_tier_at = None if tier.next_threshold is None else max(0, tier.next_threshold - balance)
    return LoyaltyUiSnapshot(balance=balance, points=balance, tier=tier.name, next_tier_at=next_tier_at)


def points_to_credit_dollars(points: Any) -> Decimal:
    """Convert points to store credit (100 points = $1.00 by default)."""

    whole_points = max(0, to_int(points))
    rate = Decimal(settings.loyalty_redeem_points_per_dollar)
    return (Decimal(whole_points) / rate).quantize(_CENTS)


def earn_points_for_amount(amount_cents: Any, currency: str) -> int:
    """Points earned for an order total expressed in minor units."""

    cents = max(0, to_int(amount_cents))
    rate = settings.loyalty_earn_points_per_dollar.get(str(currency or "").upper(), 0)
    points = Decimal(cents) / Decimal(100) * Decimal(rate)
    return max(0, int(points.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def normalize_redeem_points(requested_points: Any) -> int:
    """Return 0 below the minimum, otherwise round down to the increment."""

    points = max(0, to_int(requested_points))
    if points < settings.loyalty_redeem_min_points:
        return 0
    increment = max(1, settings.loyalty_redeem_increment)
    return (points // increment) * increment


def is_valid_redeem_request(points: int) -> bool:
    increment = settings.loyalty_redeem_increment
    return (
        points >= settings.loyalty_redeem_min_points
        and increment > 0
        and points % increment == 0
    )


__all__ = [
    "LoyaltyUiSnapshot",
    "TIERS",
    "compute_loyalty",
    "earn_points_for_amount",
    "is_valid_redeem_request",
    "normalize_redeem_points",
    "points_to_credit_dollars",
    "to_int",
]
