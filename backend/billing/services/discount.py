"""Coupon discount calculation.

``calculate_discount`` is a pure function over plain values so that pricing
can be tested without a database. ``CouponTerms.from_coupon`` captures what
the calculation needs from a ``Coupon`` row at a given instant.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import FrozenSet, Optional

from billing.core.errors import BillingError, ErrorCode
from billing.models.coupon import Coupon, DiscountType

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class CouponTerms:
    coupon_id: Optional[int]
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Optional[Decimal] = None
    applies_to_all_plans: bool = True
    plan_ids: FrozenSet[int] = frozenset()
    active: bool = True

    @classmethod
    def from_coupon(cls, coupon: Coupon, now: datetime) -> "CouponTerms":
        return cls(
            coupon_id=coupon.id,
            discount_type=coupon.discount_type,
            discount_value=Decimal(coupon.discount_value),
            max_discount_amount=(
                Decimal(coupon.max_discount_amount) if coupon.max_discount_amount is not None else None
            ),
            applies_to_all_plans=coupon.applies_to_all_plans,
            plan_ids=coupon.restricted_plan_ids,
            active=coupon.is_valid_at(now),
        )


@dataclass(frozen=True)
class DiscountResult:
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    coupon_id: Optional[int] = None

    @property
    def has_discount(self) -> bool:
        return self.discount_amount > ZERO


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_discount(price: Decimal, coupon: Optional[CouponTerms], plan_id: int) -> DiscountResult:
    """Apply ``coupon`` to ``price`` for the plan ``plan_id``.

    Raises:
        BillingError: COUPON_NOT_APPLICABLE when the coupon is restricted to
            other plans.
        ValueError: if ``price`` is negative.
    """
    price = _money(price)
    if price < ZERO:
        raise ValueError(f"Price must be non-negative, got {price}")

    if coupon is None or not coupon.active:
        return DiscountResult(price, ZERO, price)

    if not coupon.applies_to_all_plans and plan_id not in coupon.plan_ids:
        raise BillingError.bad_request(
            ErrorCode.COUPON_NOT_APPLICABLE,
            "This coupon cannot be used with the selected plan",
            coupon_id=coupon.coupon_id,
            plan_id=plan_id
        )

    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = price * Decimal(coupon.discount_value) / Decimal(100)
    else:
        discount = Decimal(coupon.discount_value)

    if coupon.max_discount_amount is not None:
        discount = min(discount, Decimal(coupon.max_discount_amount))

    discount = min(max(_money(discount), ZERO), price)
    return DiscountResult(price, discount, price - discount, coupon.coupon_id)
