"""
Coupon Models for the Storefront

Coupon definitions and the per-customer usage records that track a
redemption from cart application through payment confirmation.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, Boolean, Integer, Text, Numeric, ForeignKey, Index, CheckConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database import Base
from storefront.db_types import UUIDType, UTCDateTime


class DiscountType(str, Enum):
    """Discount type enumeration."""
    PERCENTAGE = "PERCENTAGE"  # e.g., 10% off
    FIXED_AMOUNT = "FIXED_AMOUNT"  # e.g., 50.00 off


class CouponUsageStatus(str, Enum):
    """Lifecycle of a single coupon redemption."""
    PENDING = "PENDING"  # Applied to cart, payment not confirmed
    USED = "USED"  # Payment confirmed (terminal)
    CANCELLED = "CANCELLED"  # Removed before payment (terminal)


class Coupon(Base):
    """
    Coupon/Promo code model.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint(
            "current_usage_count <= max_usage_count",
            name="ck_coupons_usage_within_capacity",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Coupon Code
    code: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique coupon code (case-insensitive)"
    )

    # Display Info
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Display name for the coupon"
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Description shown to customers"
    )

    # Discount Type & Value
    discount_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DiscountType.PERCENTAGE.value,
        comment="PERCENTAGE, FIXED_AMOUNT"
    )
    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        comment="Discount value (percentage or amount)"
    )

    # Minimum Requirements
    minimum_purchase_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2),
        nullable=True,
        comment="Minimum cart value to apply coupon"
    )

    # Usage Limits
    max_usage_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Total times this coupon can be redeemed"
    )
    current_usage_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Confirmed redemptions; only incremented on payment confirmation"
    )

    # Validity Period
    valid_from: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False
    )
    valid_until: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False
    )

    # Status
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def is_valid(self, now: datetime) -> bool:
        """Check if coupon is usable at the given instant."""
        if not self.is_active:
            return False
        if now < self.valid_from or now > self.valid_until:
            return False
        return self.current_usage_count < self.max_usage_count

    def __repr__(self) -> str:
        return f"<Coupon(code='{self.code}', type='{self.discount_type}', value={self.discount_value})>"


class CouponUsage(Base):
    """
    Tracks a customer's redemption of a coupon.

    Amounts are snapshots taken when the coupon is applied to the cart.
    """
    __tablename__ = "coupon_usages"
    __table_args__ = (
        # One open application and one confirmed redemption per customer per coupon
        Index(
            "uq_coupon_usages_pending_user_coupon",
            "user_id",
            "coupon_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index(
            "uq_coupon_usages_used_user_coupon",
            "user_id",
            "coupon_id",
            unique=True,
            postgresql_where=text("status = 'USED'"),
            sqlite_where=text("status = 'USED'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    coupon_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("coupons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True
    )
    user_email: Mapped[Optional[str]] = mapped_column(
        String(191),
        nullable=True
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Set when payment for the order is confirmed"
    )

    # Snapshot amounts
    order_total_before_discount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        comment="Actual discount applied"
    )
    order_total_after_discount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CouponUsageStatus.PENDING.value,
        comment="PENDING, USED, CANCELLED"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    used_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True
    )

    coupon: Mapped["Coupon"] = relationship(lazy="joined")

    @property
    def coupon_code(self) -> str:
        return self.coupon.code

    def __repr__(self) -> str:
        return f"<CouponUsage(id='{self.id}', user_id={self.user_id}, status='{self.status}')>"
