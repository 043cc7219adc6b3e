"""
Guest Order Lookup API Endpoints

Email-verified order lookup for customers who checked out without an account.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Header, Query

from storefront.api.deps import DB, AppClock, Mailer
from storefront.schemas.order_lookup import (
    LookupOrderSummary,
    LookupOrdersResponse,
    SendCodeRequest,
    SendCodeResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from storefront.services.order_lookup_service import (
    OrderLookupError,
    OrderLookupVerificationService,
    ResendTooSoon,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/order-lookup", tags=["Guest Order Lookup"])


def _http_error(e: OrderLookupError) -> HTTPException:
    headers = None
    if isinstance(e, ResendTooSoon):
        headers = {"Retry-After": str(e.seconds_remaining)}
    return HTTPException(
        status_code=e.status_code,
        detail={"code": e.code, "message": e.message, **e.details},
        headers=headers,
    )


@router.post("/send-code", response_model=SendCodeResponse)
async def send_lookup_code(
    request: SendCodeRequest,
    db: DB,
    clock: AppClock,
    mailer: Mailer,
):
    """
    Send a verification code to the order email.
    A new code replaces any earlier code and ends any open lookup session.
    """
    service = OrderLookupVerificationService(db, mailer=mailer, clock=clock)
    try:
        await service.send_verification_code(request.email)
    except OrderLookupError as e:
        raise _http_error(e)

    return SendCodeResponse(
        message="Verification code sent. Please check your email.",
        expires_in_seconds=service.CODE_EXPIRY_MINUTES * 60,
        resend_in_seconds=service.RESEND_INTERVAL_SECONDS,
    )


@router.post("/verify", response_model=VerifyCodeResponse)
async def verify_lookup_code(
    request: VerifyCodeRequest,
    db: DB,
    clock: AppClock,
):
    """Exchange the emailed code for a lookup token."""
    service = OrderLookupVerificationService(db, clock=clock)
    try:
        result = await service.verify_code(request.email, request.code)
    except OrderLookupError as e:
        raise _http_error(e)

    return VerifyCodeResponse(lookup_token=result.token, expires_at=result.expires_at)


@router.get("/orders", response_model=LookupOrdersResponse)
async def list_lookup_orders(
    db: DB,
    clock: AppClock,
    x_lookup_token: Optional[str] = Header(None, alias="X-Lookup-Token"),
    token: Optional[str] = Query(None, description="Lookup token when the header is not sent"),
):
    """Get the orders placed with the verified email, newest first."""
    service = OrderLookupVerificationService(db, clock=clock)
    try:
        email, orders = await service.list_orders_for_token(x_lookup_token or token)
    except OrderLookupError as e:
        raise _http_error(e)

    return LookupOrdersResponse(
        email=email,
        orders=[LookupOrderSummary.model_validate(order) for order in orders],
    )


@router.get("/orders/{order_number}", response_model=LookupOrderSummary)
async def get_lookup_order(
    order_number: str,
    db: DB,
    clock: AppClock,
    x_lookup_token: Optional[str] = Header(None, alias="X-Lookup-Token"),
    token: Optional[str] = Query(None, description="Lookup token when the header is not sent"),
):
    """Get a single order placed with the verified email."""
    service = OrderLookupVerificationService(db, clock=clock)
    try:
        order = await service.get_order_for_token(x_lookup_token or token, order_number)
    except OrderLookupError as e:
        raise _http_error(e)

    return LookupOrderSummary.model_validate(order)
