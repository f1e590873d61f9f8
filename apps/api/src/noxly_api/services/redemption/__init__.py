"""Coupon redemption: code issuance, expiry, finalization and change feed."""
