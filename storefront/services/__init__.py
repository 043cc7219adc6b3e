# Services module
from storefront.services.coupon_service import CouponService
from storefront.services.order_lookup_service import OrderLookupVerificationService
from storefront.services.email_service import EmailService, BackgroundMailer

__all__ = [
    "CouponService",
    "OrderLookupVerificationService",
    "EmailService",
    "BackgroundMailer",
]
