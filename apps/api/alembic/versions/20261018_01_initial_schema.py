"""Initial coupon, redemption, loyalty and challenge schema.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


member_status = sa.Enum("pending", "accepted", name="organization_member_status")
point_reason = sa.Enum(
    "coupon_cost",
    "coupon_reward",
    "coupon_refund",
    "challenge_reward",
    name="loyalty_point_reason",
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=True, unique=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="user"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "organizations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("owner_id", _uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("logo_url", sa.String(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_organizations_name", "organizations", ["name"], unique=True)

    op.create_table(
        "organization_members",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            _uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", member_status, nullable=False, server_default="pending"),
        sa.Column("roles", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_organization_members_org_user"),
    )

    op.create_table(
        "coupons",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            _uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("short_description", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("coupon_code", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("is_code_required", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("max_uses_per_user", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_max_uses", sa.Integer(), nullable=True),
        sa.Column("points_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_reward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.CheckConstraint("NOT (points_cost > 0 AND points_reward > 0)", name="ck_coupons_cost_reward_exclusive"),
        sa.CheckConstraint("points_cost >= 0", name="ck_coupons_points_cost_non_negative"),
        sa.CheckConstraint("points_reward >= 0", name="ck_coupons_points_reward_non_negative"),
        sa.CheckConstraint("max_uses_per_user >= 0", name="ck_coupons_max_uses_non_negative"),
    )
    op.create_index("ix_coupons_organization_id", "coupons", ["organization_id"])

    op.create_table(
        "coupon_usages",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("coupon_id", _uuid(), sa.ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False),
        sa.Column("redemption_code", sa.String(length=16), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("points_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "finalized_by_user_id",
            _uuid(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index("ix_coupon_usages_user_id", "coupon_usages", ["user_id"])
    op.create_index("ix_coupon_usages_coupon_id", "coupon_usages", ["coupon_id"])
    op.create_index("ix_coupon_usages_redemption_code", "coupon_usages", ["redemption_code"])
    op.create_index(
        "uq_coupon_usages_pending_user_coupon",
        "coupon_usages",
        ["user_id", "coupon_id"],
        unique=True,
        postgresql_where=sa.text("is_used = false"),
        sqlite_where=sa.text("is_used = 0"),
    )
    op.create_index(
        "uq_coupon_usages_pending_code",
        "coupon_usages",
        ["redemption_code"],
        unique=True,
        postgresql_where=sa.text("is_used = false"),
        sqlite_where=sa.text("is_used = 0"),
    )

    op.create_table(
        "loyalty_points",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "organization_id",
            _uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "organization_id", name="uq_loyalty_points_user_org"),
        sa.CheckConstraint("points >= 0", name="ck_loyalty_points_non_negative"),
    )
    op.create_index("ix_loyalty_points_user_id", "loyalty_points", ["user_id"])

    op.create_table(
        "loyalty_point_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "organization_id",
            _uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", point_reason, nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_loyalty_point_transactions_user_id", "loyalty_point_transactions", ["user_id"])

    op.create_table(
        "challenges",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("reward_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "reward_organization_id",
            _uuid(),
            sa.ForeignKey("organizations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("condition_type", sa.String(length=32), nullable=False),
        sa.Column("condition_value", sa.Integer(), nullable=False),
        sa.Column("condition_organizations", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "user_challenges",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("challenge_id", _uuid(), sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("progress_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_reward_claimed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reward_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "challenge_id", name="uq_user_challenges_user_challenge"),
    )
    op.create_index("ix_user_challenges_user_id", "user_challenges", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_user_challenges_user_id", table_name="user_challenges")
    op.drop_table("user_challenges")
    op.drop_table("challenges")
    op.drop_index("ix_loyalty_point_transactions_user_id", table_name="loyalty_point_transactions")
    op.drop_table("loyalty_point_transactions")
    op.drop_index("ix_loyalty_points_user_id", table_name="loyalty_points")
    op.drop_table("loyalty_points")
    op.drop_index("uq_coupon_usages_pending_code", table_name="coupon_usages")
    op.drop_index("uq_coupon_usages_pending_user_coupon", table_name="coupon_usages")
    op.drop_index("ix_coupon_usages_redemption_code", table_name="coupon_usages")
    op.drop_index("ix_coupon_usages_coupon_id", table_name="coupon_usages")
    op.drop_index("ix_coupon_usages_user_id", table_name="coupon_usages")
    op.drop_table("coupon_usages")
    op.drop_index("ix_coupons_organization_id", table_name="coupons")
    op.drop_table("coupons")
    op.drop_table("organization_members")
    op.drop_index("ix_organizations_name", table_name="organizations")
    op.drop_table("organizations")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    point_reason.drop(bind, checkfirst=True)
    member_status.drop(bind, checkfirst=True)
