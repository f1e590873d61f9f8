"""Coupon management for organization staff and the public coupon listing."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.core.settings import settings
from noxly_api.models.coupon import Coupon
from noxly_api.models.coupon_usage import CouponUsage
from noxly_api.models.loyalty import LoyaltyPointBalance
from noxly_api.models.organization import Organization
from noxly_api.models.user import User
from noxly_api.services.redemption.expiry import as_utc, is_expired, utcnow


_EDITABLE_FIELDS = {
    "title",
    "short_description",
    "description",
    "coupon_code",
    "image_url",
    "is_code_required",
    "max_uses_per_user",
    "total_max_uses",
    "points_cost",
    "points_reward",
    "expiry_date",
    "is_active",
}

_NON_NULLABLE_FIELDS = {
    "title",
    "is_code_required",
    "max_uses_per_user",
    "points_cost",
    "points_reward",
    "is_active",
}


@dataclass
class CouponRedemptionState:
    """Whether the viewing user can start a redemption right now."""

    used_count: int = 0
    pending: bool = False
    can_redeem: bool = True
    reason: str | None = None


@dataclass
class PublicCouponView:
    coupon: Coupon
    organization_name: str | None
    state: CouponRedemptionState


def validate_coupon_fields(values: dict[str, Any]) -> None:
    """Raise ``ValueError`` for invalid point and limit combinations."""

    cleared = sorted(key for key in _NON_NULLABLE_FIELDS & set(values) if values[key] is None)
    if cleared:
        raise ValueError(f"Fields cannot be null: {', '.join(cleared)}")
    cost = int(values.get("points_cost") or 0)
    reward = int(values.get("points_reward") or 0)
    if cost < 0:
        raise ValueError("points_cost must be non-negative")
    if reward < 0:
        raise ValueError("points_reward must be non-negative")
    if cost > 0 and reward > 0:
        raise ValueError("A coupon can either cost points or award points, not both")
    max_uses = values.get("max_uses_per_user")
    if max_uses is not None and int(max_uses) < 0:
        raise ValueError("max_uses_per_user must be non-negative")
    total = values.get("total_max_uses")
    if total is not None and int(total) < 1:
        raise ValueError("total_max_uses must be at least 1 when set")
    if "title" in values and not (values.get("title") or "").strip():
        raise ValueError("title is required")


class CouponService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create_coupon(self, organization_id: UUID, **fields: Any) -> Coupon:
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported coupon fields: {', '.join(sorted(unknown))}")
        if "title" not in fields:
            raise ValueError("title is required")
        validate_coupon_fields(fields)

        coupon = Coupon(organization_id=organization_id, **fields)
        self._db.add(coupon)
        await self._db.commit()
        await self._db.refresh(coupon)
        logger.info("Created coupon", coupon_id=str(coupon.id), organization_id=str(organization_id))
        return coupon

    async def get_coupon(self, coupon_id: UUID, *, organization_id: UUID | None = None) -> Coupon | None:
        coupon = await self._db.get(Coupon, coupon_id)
        if coupon is None:
            return None
        if organization_id is not None and coupon.organization_id != organization_id:
            return None
        return coupon

    async def update_coupon(self, coupon: Coupon, changes: dict[str, Any]) -> Coupon:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported coupon fields: {', '.join(sorted(unknown))}")

        merged = {
            "points_cost": changes.get("points_cost", coupon.points_cost),
            "points_reward": changes.get("points_reward", coupon.points_reward),
            "max_uses_per_user": changes.get("max_uses_per_user", coupon.max_uses_per_user),
            "total_max_uses": changes.get("total_max_uses", coupon.total_max_uses),
        }
        if "title" in changes:
            merged["title"] = changes["title"]
        for key in _NON_NULLABLE_FIELDS & set(changes):
            merged[key] = changes[key]
        validate_coupon_fields(merged)

        for key, value in changes.items():
            setattr(coupon, key, value)
        await self._db.commit()
        await self._db.refresh(coupon)
        logger.info("Updated coupon", coupon_id=str(coupon.id), fields=sorted(changes))
        return coupon

    async def archive_coupon(self, coupon: Coupon, *, archived: bool = True) -> Coupon:
        coupon.is_archived = archived
        if archived:
            coupon.is_active = False
        await self._db.commit()
        await self._db.refresh(coupon)
        logger.info("Archived coupon" if archived else "Restored coupon", coupon_id=str(coupon.id))
        return coupon

    async def list_organization_coupons(
        self, organization_id: UUID, *, include_archived: bool = False
    ) -> list[Coupon]:
        stmt = select(Coupon).where(Coupon.organization_id == organization_id)
        if not include_archived:
            stmt = stmt.where(Coupon.is_archived.is_(False))
        stmt = stmt.order_by(Coupon.created_at.desc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_public_coupons(
        self, user: User | None, *, now: datetime | None = None
    ) -> list[PublicCouponView]:
        """Active, non-archived, non-expired, not sold out coupons of public organizations, newest first."""

        moment = as_utc(now or utcnow())
        stmt = (
            select(Coupon, Organization.name)
            .join(Organization, Organization.id == Coupon.organization_id)
            .where(
                Coupon.is_active.is_(True),
                Coupon.is_archived.is_(False),
                Organization.is_public.is_(True),
                or_(Coupon.expiry_date.is_(None), Coupon.expiry_date >= moment),
            )
            .order_by(Coupon.created_at.desc())
        )
        result = await self._db.execute(stmt)
        rows = await self._without_sold_out(result.all())
        if user is None:
            return [PublicCouponView(coupon=coupon, organization_name=name, state=CouponRedemptionState()) for coupon, name in rows]

        user_id = user.id
        coupon_ids = [coupon.id for coupon, _ in rows]
        used_counts = await self._finalized_counts(coupon_ids, user_id=user_id)
        pending = await self._pending_rows(user_id, coupon_ids)
        balances = await self._balances(user_id)

        views: list[PublicCouponView] = []
        for coupon, name in rows:
            state = CouponRedemptionState(used_count=used_counts.get(coupon.id, 0))
            pending_at = pending.get(coupon.id)
            if pending_at is not None and not is_expired(pending_at, moment, settings.redemption_window_seconds):
                state.pending = True
                state.can_redeem = False
                state.reason = "already_pending"
            elif coupon.max_uses_per_user and state.used_count >= coupon.max_uses_per_user:
                state.can_redeem = False
                state.reason = "limit_reached"
            elif coupon.points_cost and balances.get(coupon.organization_id, 0) < coupon.points_cost:
                state.can_redeem = False
                state.reason = "insufficient_points"
            views.append(PublicCouponView(coupon=coupon, organization_name=name, state=state))
        return views

    async def _without_sold_out(self, rows) -> list:
        capped = [coupon.id for coupon, _ in rows if coupon.total_max_uses is not None]
        totals = await self._finalized_counts(capped)
        return [
            (coupon, name)
            for coupon, name in rows
            if coupon.total_max_uses is None or totals.get(coupon.id, 0) < coupon.total_max_uses
        ]

    async def _finalized_counts(
        self, coupon_ids: list[UUID], *, user_id: UUID | None = None
    ) -> dict[UUID, int]:
        if not coupon_ids:
            return {}
        stmt = (
            select(CouponUsage.coupon_id, func.count(CouponUsage.id))
            .where(CouponUsage.coupon_id.in_(coupon_ids), CouponUsage.is_used.is_(True))
            .group_by(CouponUsage.coupon_id)
        )
        if user_id is not None:
            stmt = stmt.where(CouponUsage.user_id == user_id)
        result = await self._db.execute(stmt)
        return {coupon_id: int(count) for coupon_id, count in result.all()}

    async def _pending_rows(self, user_id: UUID, coupon_ids: list[UUID]) -> dict[UUID, datetime]:
        if not coupon_ids:
            return {}
        stmt = select(CouponUsage.coupon_id, CouponUsage.redeemed_at).where(
            CouponUsage.user_id == user_id,
            CouponUsage.coupon_id.in_(coupon_ids),
            CouponUsage.is_used.is_(False),
        )
        result = await self._db.execute(stmt)
        return {coupon_id: redeemed_at for coupon_id, redeemed_at in result.all()}

    async def _balances(self, user_id: UUID) -> dict[UUID, int]:
        stmt = select(LoyaltyPointBalance.organization_id, LoyaltyPointBalance.points).where(
            LoyaltyPointBalance.user_id == user_id
        )
        result = await self._db.execute(stmt)
        return {org_id: int(points or 0) for org_id, points in result.all()}


__all__ = [
    "CouponRedemptionState",
    "CouponService",
    "PublicCouponView",
    "validate_coupon_fields",
]
