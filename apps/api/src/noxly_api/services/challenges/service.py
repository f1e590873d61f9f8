"""Challenge progress, reward claims and superadmin challenge management."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.models.challenge import Challenge, ChallengeConditionType, UserChallenge
from noxly_api.models.coupon import Coupon
from noxly_api.models.coupon_usage import CouponUsage
from noxly_api.models.loyalty import LoyaltyPointReason
from noxly_api.models.organization import Organization
from noxly_api.models.user import User
from noxly_api.observability.redemptions import get_redemption_store
from noxly_api.services.challenges.conditions import (
    RedemptionFacts,
    evaluate_condition,
    parse_condition,
    progress_percentage,
)
from noxly_api.services.loyalty.points import LoyaltyPointsService
from noxly_api.services.redemption.expiry import utcnow
from noxly_api.services.redemption.outcomes import ClaimErrorKind, ClaimOutcome


@dataclass
class ChallengeProgressView:
    """Active challenge merged with the caller's progress."""

    challenge: Challenge
    progress_value: int
    is_completed: bool
    is_reward_claimed: bool
    progress_percentage: int
    reward_organization_name: str | None


_EDITABLE_FIELDS = {
    "title",
    "description",
    "is_active",
    "reward_points",
    "reward_organization_id",
    "condition_type",
    "condition_value",
    "condition_organizations",
}

_NON_NULLABLE_FIELDS = {"title", "is_active", "reward_points", "condition_type", "condition_value"}


def validate_challenge_fields(
    *,
    condition_type: str,
    condition_value: int,
    reward_points: int,
    reward_organization_id: UUID | None,
    condition_organizations: Sequence[object] | None,
) -> None:
    """Raise ``ValueError`` when the challenge definition is unusable."""

    parse_condition(condition_type, condition_value, condition_organizations)
    if condition_value < 1:
        raise ValueError("condition_value must be at least 1")
    if reward_points < 0:
        raise ValueError("reward_points must be non-negative")
    if reward_points > 0 and reward_organization_id is None:
        raise ValueError("reward_organization_id is required when reward_points is positive")


class ChallengeService:
    """Recomputes challenge progress from the usage ledger and pays rewards."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        points_service: LoyaltyPointsService | None = None,
    ) -> None:
        self._db = db_session
        self._points = points_service or LoyaltyPointsService(db_session)

    async def load_facts(self, user_id: UUID) -> RedemptionFacts:
        stmt = (
            select(Coupon.organization_id, func.count(CouponUsage.id))
            .join(Coupon, Coupon.id == CouponUsage.coupon_id)
            .where(CouponUsage.user_id == user_id, CouponUsage.is_used.is_(True))
            .group_by(Coupon.organization_id)
        )
        result = await self._db.execute(stmt)
        counts = {organization_id: int(count or 0) for organization_id, count in result.all()}
        balances = {view.organization_id: view.points for view in await self._points.list_balances(user_id)}
        return RedemptionFacts(finalized_by_organization=counts, point_balances=balances)

    async def recompute_for_user(self, user_id: UUID, *, now: datetime | None = None) -> list[UserChallenge]:
        """Refresh progress for every active challenge; flushes, never commits."""

        moment = now or utcnow()
        challenges = await self._active_challenges()
        if not challenges:
            return []

        existing = await self._progress_rows(user_id, [challenge.id for challenge in challenges])
        facts = await self.load_facts(user_id)
        rows: list[UserChallenge] = []
        newly_completed = 0

        for challenge in challenges:
            try:
                condition = parse_condition(
                    challenge.condition_type,
                    challenge.condition_value,
                    challenge.condition_organizations,
                )
            except ValueError:
                logger.warning(
                    "Skipping challenge with unknown condition",
                    challenge_id=str(challenge.id),
                    condition_type=challenge.condition_type,
                )
                continue

            progress = evaluate_condition(condition, facts)
            row = existing.get(challenge.id)
            if row is None:
                row = UserChallenge(user_id=user_id, challenge_id=challenge.id, progress_value=0)
                self._db.add(row)

            row.progress_value = progress
            if not row.is_completed and progress >= challenge.condition_value:
                row.is_completed = True
                row.completed_at = moment
                newly_completed += 1
            rows.append(row)

        await self._db.flush()
        logger.debug(
            "Recomputed challenge progress",
            user_id=str(user_id),
            challenges=len(rows),
            newly_completed=newly_completed,
        )
        return rows

    async def list_with_progress(self, user_id: UUID | None) -> list[ChallengeProgressView]:
        challenges = await self._active_challenges()
        progress: dict[UUID, UserChallenge] = {}
        if user_id is not None and challenges:
            progress = await self._progress_rows(user_id, [challenge.id for challenge in challenges])

        names = await self._organization_names(
            challenge.reward_organization_id for challenge in challenges if challenge.reward_organization_id
        )
        views: list[ChallengeProgressView] = []
        for challenge in challenges:
            row = progress.get(challenge.id)
            value = row.progress_value if row else 0
            views.append(
                ChallengeProgressView(
                    challenge=challenge,
                    progress_value=value,
                    is_completed=bool(row and row.is_completed),
                    is_reward_claimed=bool(row and row.is_reward_claimed),
                    progress_percentage=progress_percentage(value, challenge.condition_value),
                    reward_organization_name=names.get(challenge.reward_organization_id),
                )
            )
        return views

    async def claim_reward(self, user: User | None, challenge_id: UUID, *, now: datetime | None = None) -> ClaimOutcome:
        """Credit the challenge reward once; commits on success."""

        store = get_redemption_store()
        if user is None:
            store.record_claim(ClaimErrorKind.UNAUTHORIZED.value)
            return ClaimOutcome.failure(ClaimErrorKind.UNAUTHORIZED, challenge_id=challenge_id)

        moment = now or utcnow()
        try:
            challenge = await self._db.get(Challenge, challenge_id)
            if challenge is None:
                store.record_claim(ClaimErrorKind.CHALLENGE_NOT_FOUND.value)
                return ClaimOutcome.failure(ClaimErrorKind.CHALLENGE_NOT_FOUND, challenge_id=challenge_id)

            rows = await self._progress_rows(user.id, [challenge_id])
            row = rows.get(challenge_id)
            if row is None or not row.is_completed:
                store.record_claim(ClaimErrorKind.NOT_COMPLETED.value)
                return ClaimOutcome.failure(ClaimErrorKind.NOT_COMPLETED, challenge_id=challenge_id)
            if row.is_reward_claimed:
                store.record_claim(ClaimErrorKind.ALREADY_CLAIMED.value)
                return ClaimOutcome.failure(ClaimErrorKind.ALREADY_CLAIMED, challenge_id=challenge_id)

            stmt = (
                update(UserChallenge)
                .where(
                    UserChallenge.id == row.id,
                    UserChallenge.is_completed.is_(True),
                    UserChallenge.is_reward_claimed.is_(False),
                )
                .values(is_reward_claimed=True, reward_claimed_at=moment)
                .execution_options(synchronize_session=False)
            )
            result = await self._db.execute(stmt)
            if result.rowcount == 0:
                await self._db.rollback()
                store.record_claim(ClaimErrorKind.ALREADY_CLAIMED.value)
                return ClaimOutcome.failure(ClaimErrorKind.ALREADY_CLAIMED, challenge_id=challenge_id)

            reward = int(challenge.reward_points or 0)
            if reward > 0 and challenge.reward_organization_id is not None:
                await self._points.credit(
                    user.id,
                    challenge.reward_organization_id,
                    reward,
                    reason=LoyaltyPointReason.CHALLENGE_REWARD,
                    reference_id=str(challenge.id),
                )
            await self.recompute_for_user(user.id, now=moment)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Challenge reward claim failed", challenge_id=str(challenge_id), error=str(exc))
            store.record_claim(ClaimErrorKind.TRANSIENT_STORE_ERROR.value)
            return ClaimOutcome.failure(ClaimErrorKind.TRANSIENT_STORE_ERROR, challenge_id=challenge_id)

        store.record_claim("claimed")
        logger.info(
            "Claimed challenge reward",
            user_id=str(user.id),
            challenge_id=str(challenge_id),
            reward_points=reward,
        )
        return ClaimOutcome(
            challenge_id=challenge_id,
            reward_points=reward,
            organization_id=challenge.reward_organization_id,
        )

    async def list_challenges(self) -> list[Challenge]:
        stmt = select(Challenge).order_by(Challenge.created_at.asc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def create_challenge(
        self,
        *,
        title: str,
        condition_type: str,
        condition_value: int,
        reward_points: int = 0,
        reward_organization_id: UUID | None = None,
        condition_organizations: Sequence[UUID] | None = None,
        description: str | None = None,
        is_active: bool = True,
    ) -> Challenge:
        if not title or not title.strip():
            raise ValueError("title is required")
        validate_challenge_fields(
            condition_type=condition_type,
            condition_value=condition_value,
            reward_points=reward_points,
            reward_organization_id=reward_organization_id,
            condition_organizations=condition_organizations,
        )
        challenge = Challenge(
            title=title.strip(),
            description=description,
            is_active=is_active,
            reward_points=reward_points,
            reward_organization_id=reward_organization_id,
            condition_type=ChallengeConditionType(condition_type).value,
            condition_value=condition_value,
            condition_organizations=[str(org_id) for org_id in condition_organizations or []],
        )
        self._db.add(challenge)
        await self._db.commit()
        await self._db.refresh(challenge)
        logger.info("Created challenge", challenge_id=str(challenge.id), condition_type=challenge.condition_type)
        return challenge

    async def update_challenge(self, challenge_id: UUID, changes: dict[str, Any]) -> Challenge | None:
        challenge = await self._db.get(Challenge, challenge_id)
        if challenge is None:
            return None

        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported challenge fields: {', '.join(sorted(unknown))}")
        cleared = sorted(key for key in _NON_NULLABLE_FIELDS & set(changes) if changes[key] is None)
        if cleared:
            raise ValueError(f"Fields cannot be null: {', '.join(cleared)}")

        merged = {
            "condition_type": changes.get("condition_type", challenge.condition_type),
            "condition_value": changes.get("condition_value", challenge.condition_value),
            "reward_points": changes.get("reward_points", challenge.reward_points),
            "reward_organization_id": changes.get("reward_organization_id", challenge.reward_organization_id),
            "condition_organizations": changes.get(
                "condition_organizations", challenge.condition_organizations
            ),
        }
        validate_challenge_fields(**merged)
        if "title" in changes and not (changes["title"] or "").strip():
            raise ValueError("title is required")

        for key, value in changes.items():
            if key == "condition_organizations":
                value = [str(org_id) for org_id in value or []]
            elif key == "condition_type":
                value = ChallengeConditionType(value).value
            setattr(challenge, key, value)

        await self._db.commit()
        await self._db.refresh(challenge)
        logger.info("Updated challenge", challenge_id=str(challenge_id), fields=sorted(changes))
        return challenge

    async def toggle_challenge(self, challenge_id: UUID) -> Challenge | None:
        challenge = await self._db.get(Challenge, challenge_id)
        if challenge is None:
            return None
        challenge.is_active = not challenge.is_active
        await self._db.commit()
        await self._db.refresh(challenge)
        logger.info("Toggled challenge", challenge_id=str(challenge_id), is_active=challenge.is_active)
        return challenge

    async def delete_challenge(self, challenge_id: UUID) -> bool:
        challenge = await self._db.get(Challenge, challenge_id)
        if challenge is None:
            return False
        await self._db.delete(challenge)
        await self._db.commit()
        logger.info("Deleted challenge", challenge_id=str(challenge_id))
        return True

    async def _active_challenges(self) -> list[Challenge]:
        stmt = select(Challenge).where(Challenge.is_active.is_(True)).order_by(Challenge.created_at.asc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _progress_rows(self, user_id: UUID, challenge_ids: list[UUID]) -> dict[UUID, UserChallenge]:
        stmt = select(UserChallenge).where(
            UserChallenge.user_id == user_id,
            UserChallenge.challenge_id.in_(challenge_ids),
        )
        result = await self._db.execute(stmt)
        return {row.challenge_id: row for row in result.scalars().all()}

    async def _organization_names(self, organization_ids: Iterable[UUID]) -> dict[UUID, str]:
        ids = list(set(organization_ids))
        if not ids:
            return {}
        result = await self._db.execute(select(Organization.id, Organization.name).where(Organization.id.in_(ids)))
        return {org_id: name for org_id, name in result.all()}


__all__ = ["ChallengeProgressView", "ChallengeService", "validate_challenge_fields"]
