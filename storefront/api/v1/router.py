from fastapi import APIRouter

from storefront.api.v1.endpoints import (
    # Checkout
    coupons,
    # Guest order lookup
    order_lookup,
)

api_router = APIRouter()

api_router.include_router(coupons.router)
api_router.include_router(order_lookup.router)
