import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from storefront.models.coupon import Coupon, CouponUsage, CouponUsageStatus, DiscountType
from storefront.services.coupon_service import (
    AlreadyApplied,
    AlreadyUsed,
    CannotRemoveUsed,
    CouponExpired,
    CouponNotActive,
    CouponNotFound,
    CouponNotYetValid,
    CouponService,
    InvalidCartTotal,
    LoginRequired,
    MinimumPurchaseNotMet,
    UsageLimitExceeded,
    UsageNotFound,
)


@pytest.fixture
def service(db, clock):
    return CouponService(db, clock=clock, strict_lookup=True)


@pytest.fixture
def lenient_service(db, clock):
    return CouponService(db, clock=clock, strict_lookup=False)


async def test_welcome_coupon_end_to_end(service, make_coupon):
    coupon = await make_coupon(
        code="WELCOME10",
        discount_type=DiscountType.PERCENTAGE,
        discount_value="10",
        minimum_purchase_amount="100.00",
        max_usage_count=1,
    )

    usage = await service.apply_coupon("WELCOME10", Decimal("150.00"), user_id=7)
    assert usage.status == CouponUsageStatus.PENDING.value
    assert usage.discount_amount == Decimal("15.00")
    assert usage.order_total_before_discount == Decimal("150.00")
    assert usage.order_total_after_discount == Decimal("135.00")

    confirmed = await service.confirm_coupon(usage.id, order_ref=42)
    assert confirmed.status == CouponUsageStatus.USED.value
    assert confirmed.order_id == 42
    assert confirmed.used_at is not None
    await service.db.refresh(coupon)
    assert coupon.current_usage_count == 1

    with pytest.raises(AlreadyUsed):
        await service.apply_coupon("WELCOME10", Decimal("200.00"), user_id=7)


async def test_apply_is_case_insensitive(service, make_coupon):
    await make_coupon(code="SAVE10")

    usage = await service.apply_coupon("  save10 ", Decimal("50.00"), user_id=1)

    assert usage.coupon_code == "SAVE10"
    assert usage.discount_amount == Decimal("5.00")


async def test_apply_requires_login(service, make_coupon):
    await make_coupon()

    with pytest.raises(LoginRequired):
        await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=None)


@pytest.mark.parametrize("cart_total", [Decimal("0"), Decimal("-5.00")])
async def test_apply_rejects_non_positive_cart_total(service, make_coupon, cart_total):
    await make_coupon()

    with pytest.raises(InvalidCartTotal):
        await service.apply_coupon("SAVE10", cart_total, user_id=1)


async def test_apply_unknown_code(service):
    with pytest.raises(CouponNotFound) as exc:
        await service.apply_coupon("NOPE", Decimal("50.00"), user_id=1)
    assert exc.value.details["coupon_code"] == "NOPE"


async def test_strict_lookup_hides_unusable_coupons(service, make_coupon, clock):
    await make_coupon(code="OLD", valid_until=clock.now() - timedelta(minutes=1))
    await make_coupon(code="OFF", is_active=False)
    await make_coupon(code="FULL", max_usage_count=3, current_usage_count=3)

    for code in ("OLD", "OFF", "FULL"):
        with pytest.raises(CouponNotFound):
            await service.apply_coupon(code, Decimal("50.00"), user_id=1)


async def test_lenient_lookup_reports_specific_reason(lenient_service, make_coupon, clock):
    now = clock.now()
    await make_coupon(code="OFF", is_active=False)
    await make_coupon(code="SOON", valid_from=now + timedelta(minutes=5))
    await make_coupon(code="OLD", valid_until=now - timedelta(minutes=1))
    await make_coupon(code="FULL", max_usage_count=3, current_usage_count=3)
    await make_coupon(code="BIG", minimum_purchase_amount="500.00")

    expected = {
        "OFF": CouponNotActive,
        "SOON": CouponNotYetValid,
        "OLD": CouponExpired,
        "FULL": UsageLimitExceeded,
        "BIG": MinimumPurchaseNotMet,
    }
    for code, error in expected.items():
        with pytest.raises(error):
            await lenient_service.apply_coupon(code, Decimal("50.00"), user_id=1)


async def test_first_failing_check_wins(lenient_service, make_coupon, clock):
    await make_coupon(
        code="WORST",
        is_active=False,
        valid_until=clock.now() - timedelta(days=1),
        max_usage_count=1,
        current_usage_count=1,
        minimum_purchase_amount="1000.00",
    )

    with pytest.raises(CouponNotActive):
        await lenient_service.apply_coupon("WORST", Decimal("50.00"), user_id=1)


async def test_apply_twice_is_already_applied(service, make_coupon):
    await make_coupon()
    await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)

    with pytest.raises(AlreadyApplied):
        await service.apply_coupon("SAVE10", Decimal("80.00"), user_id=1)


async def test_other_customers_can_apply_same_coupon(service, make_coupon):
    await make_coupon()

    first = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)
    second = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=2)

    assert first.id != second.id


async def test_duplicate_pending_usage_rejected_by_database(db, make_coupon):
    coupon = await make_coupon()

    def _usage(status):
        return CouponUsage(
            coupon_id=coupon.id,
            user_id=9,
            order_total_before_discount=Decimal("10.00"),
            discount_amount=Decimal("1.00"),
            order_total_after_discount=Decimal("9.00"),
            status=status,
        )

    db.add(_usage(CouponUsageStatus.PENDING.value))
    await db.commit()

    # Cancelled rows are not covered by the unique indexes
    db.add(_usage(CouponUsageStatus.CANCELLED.value))
    db.add(_usage(CouponUsageStatus.CANCELLED.value))
    await db.commit()

    db.add(_usage(CouponUsageStatus.PENDING.value))
    with pytest.raises(IntegrityError):
        await db.commit()
    await db.rollback()


async def test_concurrent_apply_loses_to_pending_index(service, make_coupon, db, monkeypatch):
    coupon = await make_coupon()
    existing = CouponUsage(
        coupon_id=coupon.id,
        user_id=9,
        order_total_before_discount=Decimal("50.00"),
        discount_amount=Decimal("5.00"),
        order_total_after_discount=Decimal("45.00"),
        status=CouponUsageStatus.PENDING.value,
    )
    db.add(existing)
    await db.commit()
    existing_id = existing.id

    # The competing request passed its checks before the row above existed
    async def _checks_passed(*args, **kwargs):
        return None

    monkeypatch.setattr(service, "validate_coupon_usage", _checks_passed)

    with pytest.raises(AlreadyApplied):
        await service.apply_coupon("SAVE10", Decimal("80.00"), user_id=9)

    pending = await service.get_pending_usage(9)
    assert pending.id == existing_id
    assert pending.discount_amount == Decimal("5.00")


async def test_confirm_is_idempotent(service, make_coupon):
    coupon = await make_coupon(max_usage_count=5)
    usage = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)

    await service.confirm_coupon(usage.id, order_ref=100)
    again = await service.confirm_coupon(usage.id, order_ref=100)

    assert again.status == CouponUsageStatus.USED.value
    await service.db.refresh(coupon)
    assert coupon.current_usage_count == 1


async def test_confirm_never_exceeds_capacity(service, make_coupon):
    coupon = await make_coupon(max_usage_count=1)
    first = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)
    second = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=2)

    await service.confirm_coupon(first.id, order_ref=1)
    with pytest.raises(UsageLimitExceeded):
        await service.confirm_coupon(second.id, order_ref=2)

    await service.db.refresh(coupon)
    await service.db.refresh(second)
    assert coupon.current_usage_count == 1
    assert second.status == CouponUsageStatus.PENDING.value
    assert second.order_id is None


async def test_concurrent_confirms_respect_capacity(file_session_factory, clock):
    now = clock.now()
    async with file_session_factory() as setup:
        coupon = Coupon(
            code="LAST1",
            name="Last one",
            discount_type=DiscountType.FIXED_AMOUNT.value,
            discount_value=Decimal("5.00"),
            max_usage_count=1,
            current_usage_count=0,
            valid_from=now - timedelta(hours=1),
            valid_until=now + timedelta(hours=1),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        setup.add(coupon)
        await setup.commit()
        coupon_id = coupon.id

        setup_service = CouponService(setup, clock=clock)
        first = await setup_service.apply_coupon("LAST1", Decimal("50.00"), user_id=1)
        second = await setup_service.apply_coupon("LAST1", Decimal("50.00"), user_id=2)
        usage_ids = [first.id, second.id]

    async with file_session_factory() as db_a, file_session_factory() as db_b:
        results = await asyncio.gather(
            CouponService(db_a, clock=clock).confirm_coupon(usage_ids[0], order_ref=1),
            CouponService(db_b, clock=clock).confirm_coupon(usage_ids[1], order_ref=2),
            return_exceptions=True,
        )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], UsageLimitExceeded)

    async with file_session_factory() as check:
        count = await check.scalar(select(Coupon.current_usage_count).where(Coupon.id == coupon_id))
        statuses = (
            await check.execute(select(CouponUsage.status).where(CouponUsage.coupon_id == coupon_id))
        ).scalars().all()

    assert count == 1
    assert sorted(statuses) == [CouponUsageStatus.PENDING.value, CouponUsageStatus.USED.value]


async def test_confirm_keeps_snapshot_amounts(service, make_coupon, db):
    coupon = await make_coupon(discount_value="10")
    usage = await service.apply_coupon("SAVE10", Decimal("200.00"), user_id=1)

    coupon.discount_value = Decimal("50")
    await db.commit()

    confirmed = await service.confirm_coupon(usage.id, order_ref=5)
    assert confirmed.discount_amount == Decimal("20.00")
    assert confirmed.order_total_after_discount == Decimal("180.00")


@pytest.mark.parametrize("usage_id", [uuid.uuid4(), "not-a-uuid"])
async def test_confirm_unknown_usage(service, usage_id):
    with pytest.raises(UsageNotFound):
        await service.confirm_coupon(usage_id, order_ref=1)


async def test_remove_cancels_pending_usage(service, make_coupon):
    await make_coupon()
    usage = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)

    removed = await service.remove_coupon(usage.id, user_id=1)
    assert removed.status == CouponUsageStatus.CANCELLED.value
    assert await service.get_pending_usage(1) is None

    # The coupon can be applied again once removed
    reapplied = await service.apply_coupon("SAVE10", Decimal("60.00"), user_id=1)
    assert reapplied.status == CouponUsageStatus.PENDING.value


async def test_remove_twice_is_silent(service, make_coupon):
    await make_coupon()
    usage = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)

    await service.remove_coupon(usage.id)
    again = await service.remove_coupon(usage.id)

    assert again.status == CouponUsageStatus.CANCELLED.value


async def test_remove_used_coupon_fails(service, make_coupon):
    await make_coupon()
    usage = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)
    await service.confirm_coupon(usage.id, order_ref=3)

    with pytest.raises(CannotRemoveUsed):
        await service.remove_coupon(usage.id)


async def test_remove_checks_owner(service, make_coupon):
    await make_coupon()
    usage = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)

    with pytest.raises(UsageNotFound):
        await service.remove_coupon(usage.id, user_id=2)
    with pytest.raises(UsageNotFound):
        await service.remove_coupon(uuid.uuid4())


async def test_get_pending_usage(service, make_coupon):
    await make_coupon()
    assert await service.get_pending_usage(None) is None
    assert await service.get_pending_usage(1) is None

    usage = await service.apply_coupon("SAVE10", Decimal("50.00"), user_id=1)

    pending = await service.get_pending_usage(1)
    assert pending.id == usage.id
    assert await service.get_pending_usage(2) is None


async def test_list_valid_coupons(service, make_coupon, clock):
    await make_coupon(code="ANY")
    await make_coupon(code="BIG", minimum_purchase_amount="500.00")
    await make_coupon(code="OLD", valid_until=clock.now() - timedelta(minutes=1))
    await make_coupon(code="OFF", is_active=False)
    await make_coupon(code="FULL", max_usage_count=1, current_usage_count=1)

    all_codes = {c.code for c in await service.list_valid_coupons()}
    assert all_codes == {"ANY", "BIG"}

    small_cart = {c.code for c in await service.list_valid_coupons(Decimal("100.00"))}
    assert small_cart == {"ANY"}

    large_cart = {c.code for c in await service.list_valid_coupons(Decimal("500.00"))}
    assert large_cart == {"ANY", "BIG"}


async def test_get_valid_coupon_by_code(service, make_coupon, clock):
    await make_coupon(code="SAVE10")
    await make_coupon(code="OLD", valid_until=clock.now() - timedelta(minutes=1))

    coupon = await service.get_valid_coupon_by_code("save10")
    assert coupon.code == "SAVE10"

    with pytest.raises(CouponNotFound):
        await service.get_valid_coupon_by_code("OLD")


async def test_preview_coupon(service, make_coupon, db):
    await make_coupon(code="FIFTY", discount_type=DiscountType.FIXED_AMOUNT,
                      discount_value="50.00", minimum_purchase_amount="100.00")

    preview = await service.preview_coupon("FIFTY", Decimal("250.00"))
    assert preview.valid is True
    assert preview.discount_amount == Decimal("50.00")

    too_small = await service.preview_coupon("FIFTY", Decimal("99.00"))
    assert too_small.valid is False
    assert too_small.discount_amount == Decimal("0.00")

    # Previewing never creates a usage
    result = await db.execute(select(CouponUsage))
    assert result.scalars().all() == []


async def test_coupon_is_valid_helper(make_coupon, clock):
    coupon = await make_coupon(max_usage_count=2, current_usage_count=1)
    now = clock.now()

    assert coupon.is_valid(now)
    assert not coupon.is_valid(now + timedelta(hours=2))
    assert not coupon.is_valid(now - timedelta(hours=2))

    coupon.current_usage_count = 2
    assert not coupon.is_valid(now)


async def test_capacity_check_constraint(db, make_coupon):
    coupon = await make_coupon(max_usage_count=1)
    coupon_id = coupon.id

    coupon.current_usage_count = 2
    with pytest.raises(IntegrityError):
        await db.commit()
    await db.rollback()

    result = await db.execute(select(Coupon.current_usage_count).where(Coupon.id == coupon_id))
    assert result.scalar() == 0
