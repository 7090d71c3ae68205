# pixelgrid/pricing.py
"""
Pure pricing and validation rules, shared by the quote path and the
settlement path. Nothing in here touches the database or the clock.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from pixelgrid.errors import ActiveProtectionViolation, BidTooLow, MissingOwnerIdentity, OutOfBounds
from pixelgrid.settings import PricingConfig


@dataclass(frozen=True)
class BidCheck:
    x: int
    y: int
    price: int
    expected_prior_price: int
    wants_protection: bool
    is_override: bool
    surcharge: int

    @property
    def total(self) -> int:
        return self.price + self.surcharge


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we store is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def minimum_bid(existing, config: PricingConfig) -> int:
    if existing is None:
        return config.floor_price
    return existing.price + config.price_increment


def is_under_active_protection(cell, now: datetime) -> bool:
    if cell is None or not cell.is_protected:
        return False
    expires_at = as_utc(cell.protection_expires_at)
    return expires_at is not None and expires_at > now


def required_bid_under_protection(cell, config: PricingConfig) -> int:
    # never below what the same cell would cost unprotected
    required = Decimal(cell.price) * config.protection_override_multiplier
    return max(minimum_bid(cell, config), int(required.to_integral_value(rounding=ROUND_CEILING)))


def protection_surcharge(base_price: int, config: PricingConfig) -> int:
    surcharge = Decimal(base_price) * config.protection_surcharge_multiplier
    return int(surcharge.to_integral_value(rounding=ROUND_HALF_UP))


def free_allocation_remaining(free_cells_owned: int, config: PricingConfig) -> int:
    return max(0, config.free_allocation_max - free_cells_owned)


def check_owner(owner_id) -> str:
    if owner_id is None or not str(owner_id).strip():
        raise MissingOwnerIdentity("An owner identity is required")
    return str(owner_id).strip()


def check_bounds(x: int, y: int, config: PricingConfig) -> None:
    if not (0 <= x < config.grid_width and 0 <= y < config.grid_height):
        raise OutOfBounds(f"Cell ({x},{y}) is outside the {config.grid_width}x{config.grid_height} grid")


def validate_bid(
    existing,
    *,
    x: int,
    y: int,
    price: int,
    wants_protection: bool,
    free_remaining: int,
    config: PricingConfig,
    now: datetime,
) -> BidCheck:
    """
    Validate one proposed bid against the current cell state.

    Raises ActiveProtectionViolation when the cell is protected and the bid is
    under the override multiple, BidTooLow when it is under the normal minimum.
    A zero bid on an unclaimed cell passes while the owner still has free
    allocation left.
    """
    check_bounds(x, y, config)
    if price < 0:
        raise BidTooLow(minimum_bid(existing, config))

    expected_prior_price = existing.price if existing is not None else 0

    if is_under_active_protection(existing, now):
        required = required_bid_under_protection(existing, config)
        if price < required:
            raise ActiveProtectionViolation(required)
        # override purchases never pay the protection surcharge
        return BidCheck(
            x=x,
            y=y,
            price=price,
            expected_prior_price=expected_prior_price,
            wants_protection=wants_protection,
            is_override=True,
            surcharge=0,
        )

    is_free = price == 0 and existing is None and free_remaining > 0
    if not is_free:
        minimum = minimum_bid(existing, config)
        if price < minimum:
            raise BidTooLow(minimum)

    return BidCheck(
        x=x,
        y=y,
        price=price,
        expected_prior_price=expected_prior_price,
        wants_protection=wants_protection,
        is_override=False,
        surcharge=protection_surcharge(price, config) if wants_protection else 0,
    )
