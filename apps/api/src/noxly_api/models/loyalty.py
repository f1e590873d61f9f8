"""Per-organization loyalty point balances and their ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from noxly_api.db.base import Base


class LoyaltyPointBalance(Base):
    """Spendable points a user holds at one organization."""

    __tablename__ = "loyalty_points"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_loyalty_points_user_org"),
        CheckConstraint("points >= 0", name="ck_loyalty_points_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    points = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyPointReason(str, Enum):
    """Why a balance moved."""

    COUPON_COST = "coupon_cost"
    COUPON_REWARD = "coupon_reward"
    COUPON_REFUND = "coupon_refund"
    CHALLENGE_REWARD = "challenge_reward"


class LoyaltyPointTransaction(Base):
    """Append-only record of every balance mutation."""

    __tablename__ = "loyalty_point_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(
        SqlEnum(
            LoyaltyPointReason,
            name="loyalty_point_reason",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
    )
    reference_id = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
