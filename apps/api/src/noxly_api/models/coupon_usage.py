"""Usage ledger: one row per redemption attempt."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from noxly_api.db.base import Base


class CouponUsage(Base):
    """Redemption attempt; pending while ``is_used`` is false, finalized after."""

    __tablename__ = "coupon_usages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    coupon_id = Column(
        UUID(as_uuid=True),
        ForeignKey("coupons.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    redemption_code = Column(String(length=16), nullable=True, index=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=False)
    is_used = Column(Boolean, nullable=False, default=False, server_default="false")
    points_spent = Column(Integer, nullable=False, default=0, server_default="0")
    points_awarded = Column(Integer, nullable=False, default=0, server_default="0")
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    finalized_by_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    coupon = relationship("Coupon", back_populates="usages")


# At most one pending row per (user, coupon); a losing insert raises IntegrityError.
Index(
    "uq_coupon_usages_pending_user_coupon",
    CouponUsage.user_id,
    CouponUsage.coupon_id,
    unique=True,
    postgresql_where=CouponUsage.is_used.is_(False),
    sqlite_where=CouponUsage.is_used.is_(False),
)

Index(
    "uq_coupon_usages_pending_code",
    CouponUsage.redemption_code,
    unique=True,
    postgresql_where=CouponUsage.is_used.is_(False),
    sqlite_where=CouponUsage.is_used.is_(False),
)
