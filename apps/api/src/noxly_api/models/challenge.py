"""Cross-organization challenges and per-user progress."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from noxly_api.db.base import Base


class ChallengeConditionType(str, Enum):
    """Stored tag for the challenge condition."""

    REDEEM_COUNT = "REDEEM_COUNT"
    TOTAL_POINTS = "TOTAL_POINTS"
    DIFFERENT_ORGANIZATIONS = "DIFFERENT_ORGANIZATIONS"


class Challenge(Base):
    """Achievement with a condition, a target and a point reward."""

    __tablename__ = "challenges"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    reward_points = Column(Integer, nullable=False, default=0, server_default="0")
    reward_organization_id = Column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    condition_type = Column(String(length=32), nullable=False)
    condition_value = Column(Integer, nullable=False)
    condition_organizations = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    progress = relationship("UserChallenge", back_populates="challenge", cascade="all, delete-orphan")


class UserChallenge(Base):
    """Progress of one user toward one challenge."""

    __tablename__ = "user_challenges"
    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="uq_user_challenges_user_challenge"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    challenge_id = Column(
        UUID(as_uuid=True),
        ForeignKey("challenges.id", ondelete="CASCADE"),
        nullable=False,
    )
    progress_value = Column(Integer, nullable=False, default=0, server_default="0")
    is_completed = Column(Boolean, nullable=False, default=False, server_default="false")
    completed_at = Column(DateTime(timezone=True), nullable=True)
    is_reward_claimed = Column(Boolean, nullable=False, default=False, server_default="false")
    reward_claimed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    challenge = relationship("Challenge", back_populates="progress")
