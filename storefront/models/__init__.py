from storefront.models.coupon import Coupon, CouponUsage, CouponUsageStatus, DiscountType
from storefront.models.order import Order
from storefront.models.order_lookup import OrderLookupSession

__all__ = [
    "Coupon",
    "CouponUsage",
    "CouponUsageStatus",
    "DiscountType",
    "Order",
    "OrderLookupSession",
]
