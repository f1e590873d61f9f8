"""Organizations (venues) and their delegated staff."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from noxly_api.db.base import Base


class MemberRole(str, Enum):
    """Permissions an organization can delegate to a staff member."""

    COUPON_MANAGER = "coupon_manager"
    EVENT_MANAGER = "event_manager"
    REDEMPTION_AGENT = "redemption_agent"
    VIEWER = "viewer"


class MemberStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"


class Organization(Base):
    """A venue publishing coupons and owning loyalty balances."""

    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, unique=True, index=True)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    description = Column(Text, nullable=True)
    logo_url = Column(String, nullable=True)
    is_public = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    members = relationship(
        "OrganizationMember", back_populates="organization", cascade="all, delete-orphan"
    )
    coupons = relationship("Coupon", back_populates="organization")


class OrganizationMember(Base):
    """Staff membership with a set of delegated roles."""

    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_members_org_user"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(
        SqlEnum(
            MemberStatus,
            name="organization_member_status",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
        default=MemberStatus.PENDING,
        server_default=MemberStatus.PENDING.value,
    )
    roles = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    organization = relationship("Organization", back_populates="members")
