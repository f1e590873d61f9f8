"""Redemption initiation, finalization and pending-usage housekeeping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.core.settings import settings
from noxly_api.models.coupon import Coupon
from noxly_api.models.coupon_usage import CouponUsage
from noxly_api.models.loyalty import LoyaltyPointReason
from noxly_api.models.user import User
from noxly_api.observability.redemptions import get_redemption_store
from noxly_api.observability.tracing import get_tracer
from noxly_api.services.challenges.service import ChallengeService
from noxly_api.services.loyalty.points import LoyaltyPointsService
from noxly_api.services.organizations.scope import StaffScope
from noxly_api.services.redemption.codes import generate_redemption_code, is_well_formed_code
from noxly_api.services.redemption.expiry import (
    UsageDisplayStatus,
    as_utc,
    display_status,
    expiry_deadline,
    is_expired,
    remaining_seconds,
    utcnow,
)
from noxly_api.services.redemption.feed import (
    UsageChangeEvent,
    UsageChangeFeed,
    UsageChangeType,
    get_usage_feed,
)
from noxly_api.services.redemption.outcomes import (
    RedemptionErrorKind,
    RedemptionOutcome,
    UsageStatus,
)


CodeGenerator = Callable[[int], str]


@dataclass
class UsageView:
    """Usage row enriched for listings."""

    usage: CouponUsage
    coupon_title: str | None
    organization_id: UUID | None
    status: UsageDisplayStatus
    remaining_seconds: int
    expires_at: datetime | None


@dataclass
class SweepResult:
    released: int
    refunded_points: int


class _CodeCollision(Exception):
    """A concurrent insert took the allocated code; initiation is retried."""


class RedemptionService:
    """Coordinates the two-phase coupon redemption flow.

    Consumers initiate (a pending usage with a short numeric code is
    written); staff finalize the code within the validity window. Points and
    challenge progress move in the same transaction as the ledger row, and
    change events are published only after commit.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        feed: UsageChangeFeed | None = None,
        code_generator: CodeGenerator | None = None,
        points_service: LoyaltyPointsService | None = None,
        challenge_service: ChallengeService | None = None,
        window_seconds: int | None = None,
        code_length: int | None = None,
        max_code_attempts: int | None = None,
    ) -> None:
        self._db = db_session
        self._feed = feed or get_usage_feed()
        self._generate_code = code_generator or generate_redemption_code
        self._points = points_service or LoyaltyPointsService(db_session)
        self._challenges = challenge_service or ChallengeService(db_session, points_service=self._points)
        self._window = window_seconds or settings.redemption_window_seconds
        self._code_length = code_length or settings.redemption_code_length
        self._max_attempts = max_code_attempts or settings.redemption_code_max_attempts

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate(
        self, user: User | None, coupon_id: UUID, *, now: datetime | None = None
    ) -> RedemptionOutcome:
        """Issue a pending code (or redeem instantly) for ``user``."""

        store = get_redemption_store()
        with get_tracer().start_as_current_span("redemption.initiate") as span:
            span.set_attribute("noxly.coupon_id", str(coupon_id))
            if user is None:
                denied = RedemptionOutcome.failure(RedemptionErrorKind.UNAUTHORIZED, coupon_id=coupon_id)
                store.record_initiation(RedemptionErrorKind.UNAUTHORIZED.value)
                return denied

            user_id = user.id
            moment = as_utc(now or utcnow())
            events: list[UsageChangeEvent] = []
            outcome: RedemptionOutcome | None = None
            try:
                for _ in range(self._max_attempts):
                    try:
                        outcome, events = await self._initiate(user_id, coupon_id, moment)
                        break
                    except _CodeCollision:
                        logger.warning(
                            "Redemption code taken concurrently; retrying",
                            user_id=str(user_id),
                            coupon_id=str(coupon_id),
                        )
                if outcome is None:
                    outcome = RedemptionOutcome.failure(
                        RedemptionErrorKind.CODE_GENERATION_FAILED, coupon_id=coupon_id, user_id=user_id
                    )
            except SQLAlchemyError as exc:
                await self._db.rollback()
                logger.exception(
                    "Redemption initiation failed",
                    user_id=str(user_id),
                    coupon_id=str(coupon_id),
                    error=str(exc),
                )
                outcome = RedemptionOutcome.failure(
                    RedemptionErrorKind.TRANSIENT_STORE_ERROR, coupon_id=coupon_id, user_id=user_id
                )
                events = []

            for event in events:
                self._feed.publish(event)

            label = outcome.error.value if outcome.error else ("redeemed" if outcome.is_used else "issued")
            span.set_attribute("noxly.outcome", label)
            store.record_initiation(label)
            return outcome

    async def _initiate(
        self, user_id: UUID, coupon_id: UUID, moment: datetime
    ) -> tuple[RedemptionOutcome, list[UsageChangeEvent]]:
        events: list[UsageChangeEvent] = []

        async def fail(kind: RedemptionErrorKind, **fields) -> tuple[RedemptionOutcome, list[UsageChangeEvent]]:
            # A stale pending row released on the way stays released.
            if events:
                await self._db.commit()
            else:
                await self._db.rollback()
            logger.info(
                "Redemption initiation rejected",
                user_id=str(user_id),
                coupon_id=str(coupon_id),
                reason=kind.value,
            )
            return RedemptionOutcome.failure(kind, coupon_id=coupon_id, user_id=user_id, **fields), events

        coupon = await self._db.get(Coupon, coupon_id)
        if coupon is None or not await self._is_available(coupon, moment):
            return await fail(RedemptionErrorKind.COUPON_UNAVAILABLE)

        if coupon.is_code_required:
            pending = await self._pending_usage(user_id, coupon_id)
            if pending is not None:
                if not is_expired(pending.redeemed_at, moment, self._window):
                    return await fail(
                        RedemptionErrorKind.ALREADY_PENDING,
                        usage_id=pending.id,
                        code=pending.redemption_code,
                        redeemed_at=as_utc(pending.redeemed_at),
                        expires_at=expiry_deadline(pending.redeemed_at, self._window),
                    )
                released = await self._release(pending, coupon, moment)
                if released is not None:
                    events.append(released)

        if coupon.max_uses_per_user and coupon.max_uses_per_user > 0:
            used = await self._count_finalized(coupon_id, user_id=user_id)
            if used >= coupon.max_uses_per_user:
                return await fail(RedemptionErrorKind.LIMIT_REACHED)

        cost = int(coupon.points_cost or 0)
        if cost > 0:
            balance = await self._points.get_balance(user_id, coupon.organization_id)
            if balance < cost:
                return await fail(RedemptionErrorKind.INSUFFICIENT_POINTS)

        if not coupon.is_code_required:
            return await self._redeem_instantly(user_id, coupon, moment, events)

        code = await self._allocate_code(moment)
        if code is None:
            return await fail(RedemptionErrorKind.CODE_GENERATION_FAILED)

        usage = CouponUsage(
            user_id=user_id,
            coupon_id=coupon_id,
            redemption_code=code,
            redeemed_at=moment,
            is_used=False,
            points_spent=cost,
        )
        self._db.add(usage)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            pending = await self._pending_usage(user_id, coupon_id)
            if pending is not None:
                return (
                    RedemptionOutcome.failure(
                        RedemptionErrorKind.ALREADY_PENDING,
                        coupon_id=coupon_id,
                        user_id=user_id,
                        usage_id=pending.id,
                        code=pending.redemption_code,
                        redeemed_at=as_utc(pending.redeemed_at),
                        expires_at=expiry_deadline(pending.redeemed_at, self._window),
                    ),
                    [],
                )
            raise _CodeCollision() from None

        if cost > 0 and not await self._points.try_debit(
            user_id,
            coupon.organization_id,
            cost,
            reason=LoyaltyPointReason.COUPON_COST,
            reference_id=str(usage.id),
        ):
            events.clear()
            await self._db.rollback()
            return RedemptionOutcome.failure(
                RedemptionErrorKind.INSUFFICIENT_POINTS, coupon_id=coupon_id, user_id=user_id
            ), []

        if cost > 0:
            await self._challenges.recompute_for_user(user_id, now=moment)
        await self._db.commit()
        logger.info(
            "Issued redemption code",
            user_id=str(user_id),
            coupon_id=str(coupon_id),
            usage_id=str(usage.id),
            points_spent=cost,
        )
        events.append(self._event(usage, UsageChangeType.CREATED, moment))
        return (
            RedemptionOutcome(
                usage_id=usage.id,
                coupon_id=coupon_id,
                user_id=user_id,
                code=code,
                redeemed_at=moment,
                expires_at=expiry_deadline(moment, self._window),
                is_used=False,
                points_spent=cost,
            ),
            events,
        )

    async def _redeem_instantly(
        self,
        user_id: UUID,
        coupon: Coupon,
        moment: datetime,
        events: list[UsageChangeEvent],
    ) -> tuple[RedemptionOutcome, list[UsageChangeEvent]]:
        coupon_id = coupon.id
        cost = int(coupon.points_cost or 0)
        reward = int(coupon.points_reward or 0)
        usage = CouponUsage(
            user_id=user_id,
            coupon_id=coupon_id,
            redemption_code=None,
            redeemed_at=moment,
            is_used=True,
            points_spent=cost,
            points_awarded=reward,
            finalized_at=moment,
        )
        self._db.add(usage)
        await self._db.flush()

        if cost > 0 and not await self._points.try_debit(
            user_id,
            coupon.organization_id,
            cost,
            reason=LoyaltyPointReason.COUPON_COST,
            reference_id=str(usage.id),
        ):
            await self._db.rollback()
            return RedemptionOutcome.failure(
                RedemptionErrorKind.INSUFFICIENT_POINTS, coupon_id=coupon_id, user_id=user_id
            ), []
        if reward > 0:
            await self._points.credit(
                user_id,
                coupon.organization_id,
                reward,
                reason=LoyaltyPointReason.COUPON_REWARD,
                reference_id=str(usage.id),
            )
        await self._challenges.recompute_for_user(user_id, now=moment)
        await self._db.commit()

        logger.info(
            "Redeemed coupon without code",
            user_id=str(user_id),
            coupon_id=str(coupon_id),
            usage_id=str(usage.id),
        )
        events.append(self._event(usage, UsageChangeType.FINALIZED, moment))
        return (
            RedemptionOutcome(
                usage_id=usage.id,
                coupon_id=coupon_id,
                user_id=user_id,
                redeemed_at=moment,
                is_used=True,
                points_spent=cost,
                reward_points=reward,
            ),
            events,
        )

    async def _allocate_code(self, moment: datetime) -> str | None:
        """Draw codes until one is not held by a pending or recent usage."""

        recent_cutoff = moment - timedelta(seconds=self._window)
        for attempt in range(1, self._max_attempts + 1):
            code = self._generate_code(self._code_length)
            stmt = (
                select(func.count(CouponUsage.id))
                .where(CouponUsage.redemption_code == code)
                .where(or_(CouponUsage.is_used.is_(False), CouponUsage.redeemed_at >= recent_cutoff))
            )
            result = await self._db.execute(stmt)
            if int(result.scalar_one() or 0) == 0:
                return code
            logger.warning("Redemption code collision", attempt=attempt)
        logger.error("Redemption code allocation exhausted", attempts=self._max_attempts)
        return None

    async def _is_available(self, coupon: Coupon, moment: datetime) -> bool:
        if not coupon.is_active or coupon.is_archived:
            return False
        if coupon.expiry_date is not None and as_utc(coupon.expiry_date) < moment:
            return False
        if coupon.total_max_uses is not None:
            used = await self._count_finalized(coupon.id)
            if used >= coupon.total_max_uses:
                return False
        return True

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def finalize(
        self, code: str, scope: StaffScope | None, *, now: datetime | None = None
    ) -> RedemptionOutcome:
        """Accept a customer's code at the counter; exactly one caller wins."""

        store = get_redemption_store()
        with get_tracer().start_as_current_span("redemption.finalize") as span:
            moment = as_utc(now or utcnow())
            outcome = await self._finalize(code, scope, moment)
            label = outcome.error.value if outcome.error else "finalized"
            span.set_attribute("noxly.outcome", label)
            store.record_finalization(label)
            return outcome

    async def _finalize(self, code: str, scope: StaffScope | None, moment: datetime) -> RedemptionOutcome:
        if scope is None:
            return RedemptionOutcome.failure(RedemptionErrorKind.UNAUTHORIZED)
        if not is_well_formed_code(code, self._code_length):
            return RedemptionOutcome.failure(RedemptionErrorKind.INVALID_CODE)

        try:
            usage, coupon, failure = await self._check_code(code, scope, moment)
            if failure is not None:
                await self._db.rollback()
                return failure

            reward = int(coupon.points_reward or 0)
            stmt = (
                update(CouponUsage)
                .where(CouponUsage.id == usage.id, CouponUsage.is_used.is_(False))
                .values(
                    is_used=True,
                    finalized_at=moment,
                    finalized_by_user_id=scope.user_id,
                    points_awarded=reward,
                )
                .execution_options(synchronize_session=False)
            )
            usage_id, coupon_id = usage.id, coupon.id
            result = await self._db.execute(stmt)
            if result.rowcount == 0:
                await self._db.rollback()
                logger.info("Redemption lost finalize race", usage_id=str(usage_id))
                return RedemptionOutcome.failure(
                    RedemptionErrorKind.ALREADY_REDEEMED, usage_id=usage_id, coupon_id=coupon_id
                )

            if reward > 0:
                await self._points.credit(
                    usage.user_id,
                    coupon.organization_id,
                    reward,
                    reason=LoyaltyPointReason.COUPON_REWARD,
                    reference_id=str(usage.id),
                )
            await self._challenges.recompute_for_user(usage.user_id, now=moment)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Redemption finalization failed", error=str(exc))
            return RedemptionOutcome.failure(RedemptionErrorKind.TRANSIENT_STORE_ERROR)

        self._feed.publish(
            UsageChangeEvent(
                usage_id=usage.id,
                user_id=usage.user_id,
                coupon_id=usage.coupon_id,
                is_used=True,
                change=UsageChangeType.FINALIZED,
                occurred_at=moment,
            )
        )
        logger.info(
            "Finalized coupon redemption",
            usage_id=str(usage.id),
            coupon_id=str(coupon.id),
            organization_id=str(scope.organization_id),
            staff_user_id=str(scope.user_id),
            reward_points=reward,
        )
        return RedemptionOutcome(
            usage_id=usage.id,
            coupon_id=coupon.id,
            user_id=usage.user_id,
            code=code,
            redeemed_at=as_utc(usage.redeemed_at),
            expires_at=expiry_deadline(usage.redeemed_at, self._window),
            is_used=True,
            points_spent=int(usage.points_spent or 0),
            reward_points=reward,
        )

    async def inspect_code(
        self, code: str, scope: StaffScope | None, *, now: datetime | None = None
    ) -> RedemptionOutcome:
        """Run the finalization checks without mutating anything."""

        moment = as_utc(now or utcnow())
        if scope is None:
            return RedemptionOutcome.failure(RedemptionErrorKind.UNAUTHORIZED)
        if not is_well_formed_code(code, self._code_length):
            return RedemptionOutcome.failure(RedemptionErrorKind.INVALID_CODE)

        usage, coupon, failure = await self._check_code(code, scope, moment)
        if failure is not None:
            return failure
        return RedemptionOutcome(
            usage_id=usage.id,
            coupon_id=coupon.id,
            user_id=usage.user_id,
            code=code,
            redeemed_at=as_utc(usage.redeemed_at),
            expires_at=expiry_deadline(usage.redeemed_at, self._window),
            is_used=False,
            points_spent=int(usage.points_spent or 0),
            reward_points=int(coupon.points_reward or 0),
        )

    async def _check_code(
        self, code: str, scope: StaffScope, moment: datetime
    ) -> tuple[CouponUsage | None, Coupon | None, RedemptionOutcome | None]:
        stmt = (
            select(CouponUsage)
            .where(CouponUsage.redemption_code == code)
            .order_by(CouponUsage.redeemed_at.desc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        usage = result.scalar_one_or_none()
        if usage is None:
            return None, None, RedemptionOutcome.failure(RedemptionErrorKind.INVALID_CODE)

        coupon = await self._db.get(Coupon, usage.coupon_id)
        if coupon is None:
            return None, None, RedemptionOutcome.failure(RedemptionErrorKind.INVALID_CODE)
        if coupon.organization_id != scope.organization_id:
            logger.warning(
                "Redemption code presented to another organization",
                usage_id=str(usage.id),
                organization_id=str(scope.organization_id),
            )
            return usage, coupon, RedemptionOutcome.failure(RedemptionErrorKind.WRONG_ORGANIZATION)
        if usage.is_used:
            return usage, coupon, RedemptionOutcome.failure(
                RedemptionErrorKind.ALREADY_REDEEMED, usage_id=usage.id, coupon_id=coupon.id, is_used=True
            )
        if is_expired(usage.redeemed_at, moment, self._window):
            return usage, coupon, RedemptionOutcome.failure(
                RedemptionErrorKind.EXPIRED,
                usage_id=usage.id,
                coupon_id=coupon.id,
                redeemed_at=as_utc(usage.redeemed_at),
                expires_at=expiry_deadline(usage.redeemed_at, self._window),
            )
        return usage, coupon, None

    # ------------------------------------------------------------------
    # Pending-row housekeeping and reads
    # ------------------------------------------------------------------

    async def cancel_pending(
        self, user: User | None, usage_id: UUID, *, now: datetime | None = None
    ) -> RedemptionOutcome:
        """Delete the caller's unfinalized usage and refund its cost."""

        if user is None:
            return RedemptionOutcome.failure(RedemptionErrorKind.UNAUTHORIZED, usage_id=usage_id)

        moment = as_utc(now or utcnow())
        try:
            usage = await self._db.get(CouponUsage, usage_id)
            if usage is None or usage.user_id != user.id:
                return RedemptionOutcome.failure(RedemptionErrorKind.NOT_FOUND, usage_id=usage_id)
            if usage.is_used:
                return RedemptionOutcome.failure(
                    RedemptionErrorKind.ALREADY_REDEEMED, usage_id=usage_id, is_used=True
                )
            coupon = await self._db.get(Coupon, usage.coupon_id)
            refunded = int(usage.points_spent or 0)
            event = await self._release(usage, coupon, moment)
            if event is None:
                await self._db.rollback()
                return RedemptionOutcome.failure(
                    RedemptionErrorKind.ALREADY_REDEEMED, usage_id=usage_id, is_used=True
                )
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Pending usage cancellation failed", usage_id=str(usage_id), error=str(exc))
            return RedemptionOutcome.failure(RedemptionErrorKind.TRANSIENT_STORE_ERROR, usage_id=usage_id)

        self._feed.publish(event)
        logger.info("Cancelled pending redemption", usage_id=str(usage_id), refunded_points=refunded)
        return RedemptionOutcome(usage_id=usage_id, coupon_id=event.coupon_id, user_id=user.id, points_spent=refunded)

    async def sweep_expired_pending(
        self,
        *,
        now: datetime | None = None,
        grace_seconds: int = 0,
        limit: int = 200,
    ) -> SweepResult:
        """Release pending usages older than the window plus ``grace_seconds``."""

        moment = as_utc(now or utcnow())
        cutoff = moment - timedelta(seconds=self._window + grace_seconds)
        stmt = (
            select(CouponUsage)
            .where(CouponUsage.is_used.is_(False), CouponUsage.redeemed_at < cutoff)
            .order_by(CouponUsage.redeemed_at.asc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        stale = list(result.scalars().all())
        if not stale:
            return SweepResult(released=0, refunded_points=0)

        coupons = await self._coupons_by_id({usage.coupon_id for usage in stale})
        events: list[UsageChangeEvent] = []
        refunded = 0
        for usage in stale:
            spent = int(usage.points_spent or 0)
            event = await self._release(usage, coupons.get(usage.coupon_id), moment)
            if event is None:
                continue
            refunded += spent
            events.append(event)
        await self._db.commit()

        for event in events:
            self._feed.publish(event)
        get_redemption_store().record_sweep(released=len(events), refunded_points=refunded)
        logger.info("Released expired pending usages", released=len(events), refunded_points=refunded)
        return SweepResult(released=len(events), refunded_points=refunded)

    async def usage_status(self, user: User, coupon_id: UUID, *, now: datetime | None = None) -> UsageStatus:
        moment = as_utc(now or utcnow())
        used = await self._count_finalized(coupon_id, user_id=user.id)
        pending = await self._pending_usage(user.id, coupon_id)
        if pending is None or is_expired(pending.redeemed_at, moment, self._window):
            return UsageStatus(pending=False, used_count=used)
        return UsageStatus(
            pending=True,
            used_count=used,
            pending_usage_id=pending.id,
            pending_code=pending.redemption_code,
            remaining_seconds=remaining_seconds(pending.redeemed_at, moment, self._window),
        )

    async def get_user_usage(self, user: User, usage_id: UUID) -> CouponUsage | None:
        usage = await self._db.get(CouponUsage, usage_id)
        if usage is None or usage.user_id != user.id:
            return None
        return usage

    async def list_user_usages(
        self, user_id: UUID, *, now: datetime | None = None, limit: int = 100
    ) -> list[UsageView]:
        stmt = (
            select(CouponUsage, Coupon)
            .join(Coupon, Coupon.id == CouponUsage.coupon_id)
            .where(CouponUsage.user_id == user_id)
            .order_by(CouponUsage.redeemed_at.desc())
            .limit(limit)
        )
        return await self._views(stmt, as_utc(now or utcnow()))

    async def list_organization_usages(
        self, organization_id: UUID, *, now: datetime | None = None, limit: int = 100
    ) -> list[UsageView]:
        stmt = (
            select(CouponUsage, Coupon)
            .join(Coupon, Coupon.id == CouponUsage.coupon_id)
            .where(Coupon.organization_id == organization_id)
            .order_by(CouponUsage.redeemed_at.desc())
            .limit(limit)
        )
        return await self._views(stmt, as_utc(now or utcnow()))

    async def _views(self, stmt, moment: datetime) -> list[UsageView]:
        result = await self._db.execute(stmt)
        views: list[UsageView] = []
        for usage, coupon in result.all():
            pending = not usage.is_used
            views.append(
                UsageView(
                    usage=usage,
                    coupon_title=coupon.title,
                    organization_id=coupon.organization_id,
                    status=display_status(usage.is_used, usage.redeemed_at, moment, self._window),
                    remaining_seconds=remaining_seconds(usage.redeemed_at, moment, self._window) if pending else 0,
                    expires_at=expiry_deadline(usage.redeemed_at, self._window) if pending else None,
                )
            )
        return views

    async def _pending_usage(self, user_id: UUID, coupon_id: UUID) -> CouponUsage | None:
        stmt = select(CouponUsage).where(
            CouponUsage.user_id == user_id,
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.is_used.is_(False),
        )
        result = await self._db.execute(stmt)
        return result.scalars().first()

    async def _count_finalized(self, coupon_id: UUID, *, user_id: UUID | None = None) -> int:
        stmt = select(func.count(CouponUsage.id)).where(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.is_used.is_(True),
        )
        if user_id is not None:
            stmt = stmt.where(CouponUsage.user_id == user_id)
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def _coupons_by_id(self, coupon_ids: Sequence[UUID] | set[UUID]) -> dict[UUID, Coupon]:
        result = await self._db.execute(select(Coupon).where(Coupon.id.in_(list(coupon_ids))))
        return {coupon.id: coupon for coupon in result.scalars().all()}

    async def _release(
        self, usage: CouponUsage, coupon: Coupon | None, moment: datetime
    ) -> UsageChangeEvent | None:
        """Delete an unfinalized usage and refund its cost; flushes, never commits.

        Returns ``None`` when the row was finalized (or already removed) by a
        concurrent transaction; nothing is refunded in that case.
        """

        usage_id, spent = usage.id, int(usage.points_spent or 0)
        event = self._event(usage, UsageChangeType.DELETED, moment)
        stmt = (
            delete(CouponUsage)
            .where(CouponUsage.id == usage_id, CouponUsage.is_used.is_(False))
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        self._db.expunge(usage)
        if result.rowcount == 0:
            logger.info("Pending usage no longer releasable", usage_id=str(usage_id))
            return None

        if spent > 0 and coupon is not None:
            await self._points.credit(
                event.user_id,
                coupon.organization_id,
                spent,
                reason=LoyaltyPointReason.COUPON_REFUND,
                reference_id=str(usage_id),
            )
            await self._challenges.recompute_for_user(event.user_id, now=moment)
        logger.debug("Released pending usage", usage_id=str(usage_id), refunded_points=spent)
        return event

    @staticmethod
    def _event(usage: CouponUsage, change: UsageChangeType, moment: datetime) -> UsageChangeEvent:
        return UsageChangeEvent(
            usage_id=usage.id,
            user_id=usage.user_id,
            coupon_id=usage.coupon_id,
            is_used=bool(usage.is_used) if change is not UsageChangeType.DELETED else False,
            change=change,
            occurred_at=moment,
        )


__all__ = ["RedemptionService", "SweepResult", "UsageView"]
