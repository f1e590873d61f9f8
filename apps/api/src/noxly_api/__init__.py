"""NOXLY coupon and loyalty API."""
