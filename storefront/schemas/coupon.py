"""
Coupon Schemas

Request/response models for coupon listing, preview and application.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from storefront.schemas.base import BaseResponseSchema, BaseCreateSchema


class CouponDetail(BaseResponseSchema):
    """Public coupon information."""
    id: UUID
    code: str
    name: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    minimum_purchase_amount: Optional[Decimal] = None
    valid_from: datetime
    valid_until: datetime


class ValidateCouponRequest(BaseCreateSchema):
    """Request to preview a coupon against a cart total."""
    code: str = Field(..., min_length=1, max_length=50)
    cart_total: Optional[Decimal] = Field(None, ge=0)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class ValidateCouponResponse(BaseModel):
    """Coupon preview result."""
    valid: bool
    code: str
    discount_amount: Decimal = Decimal("0.00")
    message: str
    coupon: Optional[CouponDetail] = None


class ApplyCouponRequest(BaseCreateSchema):
    """Request to apply a coupon to the current cart."""
    code: str = Field(..., min_length=1, max_length=50)
    cart_total: Decimal = Field(..., gt=0)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class CouponUsageResponse(BaseResponseSchema):
    """A coupon usage with its snapshot amounts."""
    id: UUID
    coupon_id: UUID
    coupon_code: str
    user_id: int
    order_id: Optional[int] = None
    status: str
    order_total_before_discount: Decimal
    discount_amount: Decimal
    order_total_after_discount: Decimal
    created_at: datetime
    used_at: Optional[datetime] = None
