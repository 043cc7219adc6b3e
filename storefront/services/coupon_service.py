"""
Coupon Service

Applies coupons to carts and tracks each redemption from PENDING through
USED or CANCELLED. Capacity and per-customer uniqueness are enforced by the
database (conditional updates and partial unique indexes), not in memory.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Union

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.clock import Clock, system_clock
from storefront.models.coupon import Coupon, CouponUsage, CouponUsageStatus, DiscountType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


# ==================== Errors ====================

class CouponError(Exception):
    """Base exception for coupon errors."""
    status_code = 400
    code = "COUPON_ERROR"

    def __init__(self, message: str, details: Dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class LoginRequired(CouponError):
    status_code = 401
    code = "LOGIN_REQUIRED"


class InvalidCartTotal(CouponError):
    code = "INVALID_CART_TOTAL"


class CouponNotFound(CouponError):
    status_code = 404
    code = "COUPON_NOT_FOUND"


class CouponNotActive(CouponError):
    status_code = 409
    code = "COUPON_NOT_ACTIVE"


class CouponNotYetValid(CouponError):
    status_code = 409
    code = "COUPON_NOT_YET_VALID"


class CouponExpired(CouponError):
    status_code = 409
    code = "COUPON_EXPIRED"


class UsageLimitExceeded(CouponError):
    status_code = 409
    code = "USAGE_LIMIT_EXCEEDED"


class MinimumPurchaseNotMet(CouponError):
    status_code = 409
    code = "MINIMUM_PURCHASE_NOT_MET"


class AlreadyUsed(CouponError):
    status_code = 409
    code = "ALREADY_USED"


class AlreadyApplied(CouponError):
    status_code = 409
    code = "ALREADY_APPLIED"


class UsageNotFound(CouponError):
    status_code = 404
    code = "USAGE_NOT_FOUND"


class CannotRemoveUsed(CouponError):
    status_code = 409
    code = "CANNOT_REMOVE_USED"


# ==================== Discount ====================

def _to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def calculate_discount(coupon: Coupon, cart_total: Union[Decimal, int, float, str]) -> Decimal:
    """
    Calculate the discount a coupon gives on a cart total.

    Does not check validity; a cart below the minimum purchase amount
    simply gets no discount.
    """
    cart_total = _to_decimal(cart_total)
    minimum = coupon.minimum_purchase_amount
    if minimum is not None and cart_total < _to_decimal(minimum):
        return ZERO

    value = _to_decimal(coupon.discount_value)

    if coupon.discount_type == DiscountType.PERCENTAGE:
        return (cart_total * value / 100).quantize(CENT, rounding=ROUND_HALF_UP)

    if coupon.discount_type == DiscountType.FIXED_AMOUNT:
        # Don't exceed cart total
        return min(value, cart_total).quantize(CENT, rounding=ROUND_HALF_UP)

    return ZERO


@dataclass
class CouponPreview:
    """Result of checking a coupon against a cart without applying it."""
    coupon: Coupon
    valid: bool
    discount_amount: Decimal
    message: str


# ==================== Service ====================

class CouponService:
    """
    Service for coupon application, removal and redemption confirmation.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = system_clock,
        strict_lookup: Optional[bool] = None,
    ):
        self.db = db
        self.clock = clock
        self.strict_lookup = settings.COUPON_STRICT_LOOKUP if strict_lookup is None else strict_lookup

    @staticmethod
    def _valid_coupon_filters(now: datetime):
        return (
            Coupon.is_active == True,  # noqa: E712
            Coupon.valid_from <= now,
            Coupon.valid_until >= now,
            Coupon.current_usage_count < Coupon.max_usage_count,
        )

    # ---------- Queries ----------

    async def get_valid_coupon_by_code(self, code: str, now: Optional[datetime] = None) -> Coupon:
        """Get a currently usable coupon by code (case-insensitive)."""
        now = now or self.clock.now()
        normalized = _normalize_code(code)

        result = await self.db.execute(
            select(Coupon).where(
                func.upper(Coupon.code) == normalized,
                *self._valid_coupon_filters(now),
            )
        )
        coupon = result.scalar_one_or_none()
        if not coupon:
            raise CouponNotFound(f"Coupon not found: {normalized}", {"coupon_code": normalized})
        return coupon

    async def _resolve_coupon(self, code: str, user_id: int, now: datetime) -> Coupon:
        """
        Find the coupon a customer is trying to apply.

        A customer who already redeemed the coupon is told so whatever state
        the coupon is in now. Otherwise, with strict lookup, a coupon that is
        not currently usable is reported as not found.
        """
        normalized = _normalize_code(code)
        result = await self.db.execute(
            select(Coupon)
            .where(func.upper(Coupon.code) == normalized)
            .execution_options(populate_existing=True)
        )
        coupon = result.scalar_one_or_none()
        if not coupon:
            raise CouponNotFound(f"Coupon not found: {normalized}", {"coupon_code": normalized})

        if await self._count_usages(user_id, coupon.id, CouponUsageStatus.USED) > 0:
            raise AlreadyUsed("You have already used this coupon. Each coupon can only be used once.")

        if self.strict_lookup and not coupon.is_valid(now):
            raise CouponNotFound(f"Coupon not found: {normalized}", {"coupon_code": normalized})
        return coupon

    async def _count_usages(self, user_id: int, coupon_id: uuid.UUID, status: CouponUsageStatus) -> int:
        result = await self.db.execute(
            select(func.count(CouponUsage.id)).where(
                CouponUsage.user_id == user_id,
                CouponUsage.coupon_id == coupon_id,
                CouponUsage.status == status.value,
            )
        )
        return result.scalar() or 0

    async def list_valid_coupons(self, cart_total: Optional[Decimal] = None) -> List[Coupon]:
        """
        List coupons that can currently be used.

        When a cart total is given, coupons whose minimum purchase amount
        exceeds it are left out.
        """
        now = self.clock.now()
        query = (
            select(Coupon)
            .where(*self._valid_coupon_filters(now))
            .order_by(Coupon.created_at.desc())
        )
        if cart_total is not None:
            query = query.where(
                or_(
                    Coupon.minimum_purchase_amount.is_(None),
                    Coupon.minimum_purchase_amount <= _to_decimal(cart_total),
                )
            )

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_pending_usage(self, user_id: Optional[int]) -> Optional[CouponUsage]:
        """Get the customer's open (PENDING) coupon usage, if any."""
        if user_id is None:
            return None

        result = await self.db.execute(
            select(CouponUsage)
            .where(
                CouponUsage.user_id == user_id,
                CouponUsage.status == CouponUsageStatus.PENDING.value,
            )
            .order_by(CouponUsage.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_usage(self, usage_id: Union[uuid.UUID, str]) -> CouponUsage:
        try:
            key = usage_id if isinstance(usage_id, uuid.UUID) else uuid.UUID(str(usage_id))
        except ValueError:
            raise UsageNotFound("Coupon usage not found", {"usage_id": str(usage_id)})

        usage = await self.db.get(CouponUsage, key, populate_existing=True)
        if not usage:
            raise UsageNotFound("Coupon usage not found", {"usage_id": str(usage_id)})
        return usage

    async def preview_coupon(self, code: str, cart_total: Optional[Decimal] = None) -> CouponPreview:
        """
        Check a coupon against a cart total without creating a usage.

        Raises CouponNotFound when the code does not match a usable coupon.
        """
        coupon = await self.get_valid_coupon_by_code(code)

        if cart_total is None:
            return CouponPreview(coupon=coupon, valid=True, discount_amount=ZERO, message="Coupon is valid")

        cart_total = _to_decimal(cart_total)
        minimum = coupon.minimum_purchase_amount
        if minimum is not None and cart_total < minimum:
            return CouponPreview(
                coupon=coupon,
                valid=False,
                discount_amount=ZERO,
                message=f"Minimum purchase of {minimum:.2f} required for this coupon",
            )

        discount = calculate_discount(coupon, cart_total)
        return CouponPreview(
            coupon=coupon,
            valid=True,
            discount_amount=discount,
            message=f"Coupon applied! You save {discount:.2f}",
        )

    # ---------- Validation ----------

    async def validate_coupon_usage(
        self,
        coupon: Coupon,
        cart_total: Decimal,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Run the redemption checks for a customer, in order.

        Raises the first failing check's error.
        """
        now = now or self.clock.now()
        cart_total = _to_decimal(cart_total)

        if not coupon.is_active:
            raise CouponNotActive(f"This coupon is not active: {coupon.code}", {"coupon_code": coupon.code})

        if now < coupon.valid_from:
            raise CouponNotYetValid(
                f"This coupon is not valid yet: {coupon.code}",
                {"coupon_code": coupon.code, "valid_from": coupon.valid_from.isoformat()},
            )

        if now > coupon.valid_until:
            raise CouponExpired(f"This coupon has expired: {coupon.code}", {"coupon_code": coupon.code})

        if coupon.current_usage_count >= coupon.max_usage_count:
            raise UsageLimitExceeded(
                f"This coupon has reached its usage limit (max {coupon.max_usage_count}): {coupon.code}",
                {"coupon_code": coupon.code, "max_usage_count": coupon.max_usage_count},
            )

        minimum = coupon.minimum_purchase_amount
        if minimum is not None and cart_total < minimum:
            raise MinimumPurchaseNotMet(
                f"Minimum purchase for this coupon is {minimum:.2f}. Cart total is {cart_total:.2f}",
                {"minimum_purchase_amount": str(minimum), "cart_total": str(cart_total)},
            )

        if await self._count_usages(user_id, coupon.id, CouponUsageStatus.USED) > 0:
            raise AlreadyUsed("You have already used this coupon. Each coupon can only be used once.")

        if await self._count_usages(user_id, coupon.id, CouponUsageStatus.PENDING) > 0:
            raise AlreadyApplied("This coupon is already applied to your cart.")

    # ---------- Commands ----------

    async def apply_coupon(
        self,
        code: str,
        cart_total: Union[Decimal, int, float, str],
        user_id: Optional[int],
        user_email: Optional[str] = None,
    ) -> CouponUsage:
        """
        Apply a coupon to a customer's cart.

        Creates a PENDING usage holding the amounts at the time of application.
        Guests cannot use coupons.
        """
        if user_id is None:
            raise LoginRequired("Please log in to use coupons.")

        cart_total = _to_decimal(cart_total)
        if cart_total <= 0:
            raise InvalidCartTotal("Cart total must be greater than zero", {"cart_total": str(cart_total)})

        now = self.clock.now()
        coupon = await self._resolve_coupon(code, user_id, now)
        await self.validate_coupon_usage(coupon, cart_total, user_id, now)

        discount = calculate_discount(coupon, cart_total)
        if discount <= 0:
            minimum = coupon.minimum_purchase_amount or ZERO
            raise MinimumPurchaseNotMet(
                f"Minimum purchase for this coupon is {minimum:.2f}. Cart total is {cart_total:.2f}",
                {"minimum_purchase_amount": str(minimum), "cart_total": str(cart_total)},
            )

        coupon_code = coupon.code
        usage = CouponUsage(
            coupon=coupon,
            user_id=user_id,
            user_email=user_email,
            order_total_before_discount=cart_total,
            discount_amount=discount,
            order_total_after_discount=(cart_total - discount).quantize(CENT),
            status=CouponUsageStatus.PENDING.value,
            created_at=now,
        )
        self.db.add(usage)

        try:
            await self.db.flush()
        except IntegrityError:
            # A concurrent request inserted the pending usage first
            await self.db.rollback()
            logger.warning(f"Concurrent coupon application rejected: {coupon_code} user={user_id}")
            raise AlreadyApplied("This coupon is already applied to your cart.")

        await self.db.commit()

        logger.info(f"Coupon applied to cart: {coupon_code} user={user_id} discount={discount}")
        return usage

    async def remove_coupon(
        self,
        usage_id: Union[uuid.UUID, str],
        user_id: Optional[int] = None,
    ) -> CouponUsage:
        """
        Remove a coupon from the cart (PENDING -> CANCELLED).

        When user_id is given the usage must belong to that customer.
        """
        usage = await self._get_usage(usage_id)
        if user_id is not None and usage.user_id != user_id:
            raise UsageNotFound("Coupon usage not found", {"usage_id": str(usage_id)})

        if usage.status == CouponUsageStatus.USED.value:
            raise CannotRemoveUsed("A used coupon cannot be removed.")

        result = await self.db.execute(
            update(CouponUsage)
            .where(
                CouponUsage.id == usage.id,
                CouponUsage.status != CouponUsageStatus.USED.value,
            )
            .values(status=CouponUsageStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise CannotRemoveUsed("A used coupon cannot be removed.")

        await self.db.commit()
        await self.db.refresh(usage)

        logger.info(f"Coupon removed from cart: {usage.coupon.code} usage={usage.id}")
        return usage

    async def confirm_coupon(
        self,
        usage_id: Union[uuid.UUID, str],
        order_ref: int,
    ) -> CouponUsage:
        """
        Mark a coupon usage as USED once the order's payment is confirmed.

        Idempotent: confirming an already USED usage does nothing. The status
        change and the coupon's usage count increment commit together.
        """
        usage = await self._get_usage(usage_id)
        key, coupon_id = usage.id, usage.coupon_id

        if usage.status == CouponUsageStatus.USED.value:
            logger.warning(f"Coupon usage already confirmed: {key}")
            return usage

        now = self.clock.now()

        try:
            transitioned = await self.db.execute(
                update(CouponUsage)
                .where(
                    CouponUsage.id == key,
                    CouponUsage.status != CouponUsageStatus.USED.value,
                )
                .values(
                    status=CouponUsageStatus.USED.value,
                    order_id=order_ref,
                    used_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            # Another usage of this coupon by the same customer is already USED
            await self.db.rollback()
            raise AlreadyUsed("You have already used this coupon. Each coupon can only be used once.")

        if transitioned.rowcount == 0:
            # Confirmed concurrently by another request
            await self.db.rollback()
            await self.db.refresh(usage)
            return usage

        incremented = await self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                Coupon.current_usage_count < Coupon.max_usage_count,
            )
            .values(
                current_usage_count=Coupon.current_usage_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if incremented.rowcount == 0:
            await self.db.rollback()
            logger.warning(f"Coupon capacity reached while confirming usage {key}")
            raise UsageLimitExceeded(
                "This coupon has reached its usage limit.",
                {"usage_id": str(key)},
            )

        await self.db.commit()
        await self.db.refresh(usage)
        await self.db.refresh(usage.coupon)

        logger.info(
            f"Coupon used: {usage.coupon.code} order={order_ref} discount={usage.discount_amount}"
        )
        return usage
