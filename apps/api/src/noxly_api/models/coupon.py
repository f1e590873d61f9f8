"""Coupons published by organizations."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from noxly_api.db.base import Base


class Coupon(Base):
    """Discount offer redeemable by consumers, optionally through a timed code."""

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint(
            "NOT (points_cost > 0 AND points_reward > 0)",
            name="ck_coupons_cost_reward_exclusive",
        ),
        CheckConstraint("points_cost >= 0", name="ck_coupons_points_cost_non_negative"),
        CheckConstraint("points_reward >= 0", name="ck_coupons_points_reward_non_negative"),
        CheckConstraint("max_uses_per_user >= 0", name="ck_coupons_max_uses_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String, nullable=False)
    short_description = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    coupon_code = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    is_code_required = Column(Boolean, nullable=False, default=True, server_default="true")
    max_uses_per_user = Column(Integer, nullable=False, default=1, server_default="1")
    total_max_uses = Column(Integer, nullable=True)
    points_cost = Column(Integer, nullable=False, default=0, server_default="0")
    points_reward = Column(Integer, nullable=False, default=0, server_default="0")
    expiry_date = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    is_archived = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    organization = relationship("Organization", back_populates="coupons")
    usages = relationship("CouponUsage", back_populates="coupon", cascade="all, delete-orphan")
