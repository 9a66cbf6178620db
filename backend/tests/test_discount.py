"""Coupon discount calculation tests"""
from datetime import timedelta
from decimal import Decimal

import pytest

from billing.core.errors import BillingError, ErrorCode, ErrorKind
from billing.models.coupon import CouponStatus, DiscountType
from billing.services.discount import CouponTerms, calculate_discount


def percentage(value, cap=None, **kwargs):
    return CouponTerms(
        coupon_id=1, discount_type=DiscountType.PERCENTAGE, discount_value=Decimal(value),
        max_discount_amount=Decimal(cap) if cap is not None else None, **kwargs
    )


def fixed(value, cap=None, **kwargs):
    return CouponTerms(
        coupon_id=2, discount_type=DiscountType.FIXED, discount_value=Decimal(value),
        max_discount_amount=Decimal(cap) if cap is not None else None, **kwargs
    )


@pytest.mark.critical
class TestCalculateDiscount:
    """Pricing of a plan with and without coupons"""

    def test_percentage_coupon(self):
        result = calculate_discount(Decimal("100.00"), percentage("20"), plan_id=1)
        assert result.discount_amount == Decimal("20.00")
        assert result.final_amount == Decimal("80.00")
        assert result.original_amount == Decimal("100.00")
        assert result.coupon_id == 1

    def test_fixed_coupon_is_capped(self):
        result = calculate_discount(Decimal("50.00"), fixed("30", cap="10"), plan_id=1)
        assert result.discount_amount == Decimal("10.00")
        assert result.final_amount == Decimal("40.00")

    def test_no_coupon_charges_full_price(self):
        result = calculate_discount(Decimal("100"), None, plan_id=1)
        assert result.discount_amount == Decimal("0.00")
        assert result.final_amount == Decimal("100.00")
        assert not result.has_discount

    def test_inactive_coupon_charges_full_price(self):
        result = calculate_discount(Decimal("100.00"), percentage("50", active=False), plan_id=1)
        assert result.final_amount == Decimal("100.00")
        assert result.coupon_id is None

    def test_fixed_discount_never_exceeds_price(self):
        result = calculate_discount(Decimal("25.00"), fixed("40"), plan_id=1)
        assert result.discount_amount == Decimal("25.00")
        assert result.final_amount == Decimal("0.00")

    def test_percentage_rounds_half_up_to_cents(self):
        result = calculate_discount(Decimal("19.99"), percentage("15"), plan_id=1)
        # 2.9985 -> 3.00
        assert result.discount_amount == Decimal("3.00")
        assert result.final_amount == Decimal("16.99")

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError):
            calculate_discount(Decimal("-1.00"), percentage("10"), plan_id=1)

    @pytest.mark.parametrize("price", ["0.00", "0.01", "9.99", "100.00", "1234.56"])
    @pytest.mark.parametrize("terms", [
        percentage("0"), percentage("33.33"), percentage("100"), percentage("150"),
        percentage("50", cap="5"), fixed("0"), fixed("0.01"), fixed("10", cap="3"), fixed("5000"),
    ])
    def test_discount_bounds(self, price, terms):
        result = calculate_discount(Decimal(price), terms, plan_id=1)
        assert Decimal("0") <= result.discount_amount <= result.original_amount
        assert result.final_amount == result.original_amount - result.discount_amount
        if terms.max_discount_amount is not None:
            assert result.discount_amount <= terms.max_discount_amount
        assert result.final_amount.as_tuple().exponent == -2


@pytest.mark.high
class TestPlanRestrictions:
    """Coupons limited to specific plans"""

    def test_restricted_coupon_applies_to_listed_plan(self):
        terms = fixed("10", applies_to_all_plans=False, plan_ids=frozenset({7}))
        result = calculate_discount(Decimal("50.00"), terms, plan_id=7)
        assert result.final_amount == Decimal("40.00")

    def test_restricted_coupon_rejected_for_other_plan(self):
        terms = fixed("10", applies_to_all_plans=False, plan_ids=frozenset({7}))
        with pytest.raises(BillingError) as exc_info:
            calculate_discount(Decimal("50.00"), terms, plan_id=8)
        assert exc_info.value.kind == ErrorKind.BAD_REQUEST
        assert exc_info.value.code == ErrorCode.COUPON_NOT_APPLICABLE

    def test_restricted_coupon_without_plans_applies_nowhere(self):
        terms = fixed("10", applies_to_all_plans=False)
        with pytest.raises(BillingError):
            calculate_discount(Decimal("50.00"), terms, plan_id=1)


@pytest.mark.medium
class TestCouponTerms:
    """Snapshot of a coupon row at a point in time"""

    def test_from_coupon_copies_restrictions(self, restricted_coupon, plan, clock):
        terms = CouponTerms.from_coupon(restricted_coupon, clock.now)
        assert terms.plan_ids == frozenset({plan.id})
        assert terms.applies_to_all_plans is False
        assert terms.max_discount_amount == Decimal("10.00")
        assert terms.active is True

    def test_expired_window_is_inactive(self, coupon, clock, db_session):
        coupon.expires_at = clock.now - timedelta(days=1)
        db_session.commit()
        assert CouponTerms.from_coupon(coupon, clock.now).active is False

    def test_not_yet_started_is_inactive(self, coupon, clock, db_session):
        coupon.starts_at = clock.now + timedelta(hours=1)
        db_session.commit()
        assert CouponTerms.from_coupon(coupon, clock.now).active is False

    def test_disabled_status_is_inactive(self, coupon, clock, db_session):
        coupon.status = CouponStatus.INACTIVE
        db_session.commit()
        assert CouponTerms.from_coupon(coupon, clock.now).active is False
