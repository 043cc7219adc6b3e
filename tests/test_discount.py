from decimal import Decimal

import pytest

from storefront.models.coupon import Coupon, DiscountType
from storefront.services.coupon_service import calculate_discount


def _coupon(discount_type, value, minimum=None):
    return Coupon(
        code="TEST",
        name="Test",
        discount_type=discount_type.value,
        discount_value=Decimal(value),
        minimum_purchase_amount=Decimal(minimum) if minimum is not None else None,
        max_usage_count=1,
    )


def test_percentage_discount():
    coupon = _coupon(DiscountType.PERCENTAGE, "10")
    assert calculate_discount(coupon, Decimal("250.00")) == Decimal("25.00")


def test_fixed_discount_capped_at_cart_total():
    coupon = _coupon(DiscountType.FIXED_AMOUNT, "50.00")
    assert calculate_discount(coupon, Decimal("30.00")) == Decimal("30.00")


def test_fixed_discount_below_cart_total():
    coupon = _coupon(DiscountType.FIXED_AMOUNT, "50.00")
    assert calculate_discount(coupon, Decimal("80.00")) == Decimal("50.00")


@pytest.mark.parametrize(
    "cart_total, expected",
    [
        ("0.05", "0.01"),  # 0.005 rounds up
        ("0.04", "0.00"),  # 0.004 rounds down
        ("33.35", "3.34"),  # 3.335 rounds half up
    ],
)
def test_percentage_discount_rounds_half_up(cart_total, expected):
    coupon = _coupon(DiscountType.PERCENTAGE, "10")
    assert calculate_discount(coupon, Decimal(cart_total)) == Decimal(expected)


def test_no_discount_below_minimum_purchase():
    coupon = _coupon(DiscountType.PERCENTAGE, "10", minimum="100.00")
    assert calculate_discount(coupon, Decimal("99.99")) == Decimal("0.00")
    assert calculate_discount(coupon, Decimal("100.00")) == Decimal("10.00")


def test_accepts_plain_numbers():
    coupon = _coupon(DiscountType.PERCENTAGE, "15")
    assert calculate_discount(coupon, 200) == Decimal("30.00")
    assert calculate_discount(coupon, "19.99") == Decimal("3.00")
