"""
Coupon API Endpoints for the Storefront

Lists, previews and applies coupon codes at checkout.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from storefront.api.deps import DB, AppClock, CurrentCustomerId
from storefront.schemas.coupon import (
    ApplyCouponRequest,
    CouponDetail,
    CouponUsageResponse,
    ValidateCouponRequest,
    ValidateCouponResponse,
)
from storefront.services.coupon_service import CouponError, CouponNotFound, CouponService, LoginRequired

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/coupons", tags=["Coupons"])


def _http_error(e: CouponError) -> HTTPException:
    return HTTPException(
        status_code=e.status_code,
        detail={"code": e.code, "message": e.message, **e.details},
    )


# ==================== Public Endpoints ====================

@router.get("", response_model=List[CouponDetail])
async def list_active_coupons(
    db: DB,
    clock: AppClock,
    cart_total: Optional[Decimal] = Query(None, ge=0),
):
    """
    Get coupons that can currently be used.
    Pass cart_total to leave out coupons whose minimum is not met.
    """
    service = CouponService(db, clock=clock)
    return await service.list_valid_coupons(cart_total)


@router.get("/pending", response_model=Optional[CouponUsageResponse])
async def get_pending_coupon(
    db: DB,
    clock: AppClock,
    customer_id: CurrentCustomerId,
):
    """Get the coupon currently applied to the customer's cart, if any."""
    service = CouponService(db, clock=clock)
    return await service.get_pending_usage(customer_id)


@router.post("/validate", response_model=ValidateCouponResponse)
async def validate_coupon(
    request: ValidateCouponRequest,
    db: DB,
    clock: AppClock,
):
    """
    Validate a coupon code.
    Returns discount details if valid, error message if not.
    """
    service = CouponService(db, clock=clock)
    try:
        preview = await service.preview_coupon(request.code, request.cart_total)
    except CouponNotFound:
        return ValidateCouponResponse(
            valid=False,
            code=request.code,
            message="Invalid coupon code",
        )

    return ValidateCouponResponse(
        valid=preview.valid,
        code=preview.coupon.code,
        discount_amount=preview.discount_amount,
        message=preview.message,
        coupon=CouponDetail.model_validate(preview.coupon),
    )


@router.post("/apply", response_model=CouponUsageResponse, status_code=status.HTTP_201_CREATED)
async def apply_coupon(
    request: ApplyCouponRequest,
    db: DB,
    clock: AppClock,
    customer_id: CurrentCustomerId,
):
    """
    Apply a coupon to the logged-in customer's cart.
    The discount is fixed at application time.
    """
    service = CouponService(db, clock=clock)
    try:
        return await service.apply_coupon(request.code, request.cart_total, customer_id)
    except CouponError as e:
        raise _http_error(e)


@router.delete("/usages/{usage_id}", response_model=CouponUsageResponse)
async def remove_coupon(
    usage_id: str,
    db: DB,
    clock: AppClock,
    customer_id: CurrentCustomerId,
):
    """Remove an applied coupon from the customer's cart."""
    try:
        if customer_id is None:
            raise LoginRequired("Please log in to use coupons.")
        service = CouponService(db, clock=clock)
        return await service.remove_coupon(usage_id, user_id=customer_id)
    except CouponError as e:
        raise _http_error(e)


@router.get("/{code}", response_model=CouponDetail)
async def get_coupon(
    code: str,
    db: DB,
    clock: AppClock,
):
    """Get a currently valid coupon by its code."""
    service = CouponService(db, clock=clock)
    try:
        return await service.get_valid_coupon_by_code(code)
    except CouponError as e:
        raise _http_error(e)
