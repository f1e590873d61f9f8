"""Coupon management services."""

from .service import CouponRedemptionState, CouponService, PublicCouponView, validate_coupon_fields

__all__ = ["CouponRedemptionState", "CouponService", "PublicCouponView", "validate_coupon_fields"]
