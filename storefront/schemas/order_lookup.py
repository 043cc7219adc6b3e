"""
Guest Order Lookup Schemas

Request/response models for email verification and order listing.
"""

from datetime import datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel, EmailStr, Field, field_validator

from storefront.schemas.base import BaseResponseSchema


class EmailRequestMixin(BaseModel):
    """Email field trimmed before validation and lowercased after."""
    email: EmailStr = Field(..., description="Email address used for the order")

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        if len(v) > 191:
            raise ValueError("Email address is too long")
        return v.lower()


class SendCodeRequest(EmailRequestMixin):
    """Request a verification code for an email."""


class SendCodeResponse(BaseModel):
    """Response after issuing a verification code."""
    success: bool = True
    message: str
    expires_in_seconds: int
    resend_in_seconds: int


class VerifyCodeRequest(EmailRequestMixin):
    """Exchange a verification code for a lookup token."""
    code: str = Field(..., description="6-digit verification code")


class VerifyCodeResponse(BaseModel):
    """Lookup token returned after successful verification."""
    lookup_token: str
    expires_at: datetime


class LookupOrderSummary(BaseResponseSchema):
    """Order summary visible to a verified guest."""
    id: int
    order_number: str
    status: str
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    created_at: datetime


class LookupOrdersResponse(BaseModel):
    email: str
    orders: List[LookupOrderSummary]
