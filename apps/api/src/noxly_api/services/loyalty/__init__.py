"""Loyalty point services."""

from .points import LoyaltyPointsService, PointBalanceView

__all__ = ["LoyaltyPointsService", "PointBalanceView"]
