"""Consumer and staff endpoints for the two-phase coupon redemption."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from noxly_api.api.dependencies.session import require_member_session
from noxly_api.api.dependencies.staff import require_staff_scope
from noxly_api.api.errors import error_exception
from noxly_api.core.settings import settings
from noxly_api.db.session import get_session, get_session_factory
from noxly_api.models.organization import MemberRole
from noxly_api.models.user import User
from noxly_api.services.organizations import StaffScope
from noxly_api.services.redemption.expiry import (
    CountdownState,
    RedemptionMonitor,
    as_utc,
    expiry_deadline,
    remaining_seconds,
    utcnow,
)
from noxly_api.services.redemption.feed import get_usage_feed
from noxly_api.services.redemption.outcomes import RedemptionOutcome
from noxly_api.services.redemption.service import RedemptionService, UsageView


router = APIRouter(prefix="/redemptions", tags=["redemptions"])


class RedemptionCreateRequest(BaseModel):
    couponId: UUID


class RedemptionResponse(BaseModel):
    usageId: UUID
    couponId: UUID
    code: Optional[str]
    redeemedAt: datetime
    expiresAt: Optional[datetime]
    remainingSeconds: int
    isUsed: bool
    pointsSpent: int
    pointsAwarded: int


class FinalizeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class FinalizeResponse(BaseModel):
    success: bool
    usageId: UUID
    couponId: UUID
    rewardPoints: int


class CodePreviewResponse(BaseModel):
    usageId: UUID
    couponId: UUID
    userId: UUID
    redeemedAt: datetime
    expiresAt: datetime
    remainingSeconds: int
    rewardPoints: int


class PendingUsageResponse(BaseModel):
    usageId: UUID
    code: Optional[str]
    remainingSeconds: int


class UsageStatusResponse(BaseModel):
    pending: bool
    usedCount: int
    pendingUsage: Optional[PendingUsageResponse]


class UsageListItem(BaseModel):
    usageId: UUID
    couponId: UUID
    couponTitle: Optional[str]
    userId: UUID
    code: Optional[str]
    status: str
    redeemedAt: datetime
    expiresAt: Optional[datetime]
    remainingSeconds: int
    finalizedAt: Optional[datetime]
    pointsSpent: int
    pointsAwarded: int


def serialize_usage(view: UsageView) -> UsageListItem:
    usage = view.usage
    return UsageListItem(
        usageId=usage.id,
        couponId=usage.coupon_id,
        couponTitle=view.coupon_title,
        userId=usage.user_id,
        code=usage.redemption_code if not usage.is_used else None,
        status=view.status.value,
        redeemedAt=as_utc(usage.redeemed_at),
        expiresAt=view.expires_at,
        remainingSeconds=view.remaining_seconds,
        finalizedAt=as_utc(usage.finalized_at) if usage.finalized_at else None,
        pointsSpent=int(usage.points_spent or 0),
        pointsAwarded=int(usage.points_awarded or 0),
    )


def _raise_for(outcome: RedemptionOutcome) -> None:
    if outcome.error is None:
        return
    extra: dict[str, Any] = {}
    if outcome.usage_id is not None:
        extra["usageId"] = str(outcome.usage_id)
    if outcome.expires_at is not None:
        extra["expiresAt"] = outcome.expires_at.isoformat()
    raise error_exception(outcome.error, outcome.detail, **extra)


def _format_sse(event_type: str, payload: dict[str, Any]) -> str:
    """Serialize a payload to an SSE data frame."""

    return f"event: {event_type}\ndata: {json.dumps(payload)}\n\n"


_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
}


@router.post("", response_model=RedemptionResponse, status_code=status.HTTP_201_CREATED)
async def initiate_redemption(
    payload: RedemptionCreateRequest,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Generate a redemption code (or redeem instantly for code-less coupons)."""

    service = RedemptionService(session)
    outcome = await service.initiate(user, payload.couponId)
    _raise_for(outcome)
    now = utcnow()
    return RedemptionResponse(
        usageId=outcome.usage_id,
        couponId=outcome.coupon_id,
        code=outcome.code,
        redeemedAt=outcome.redeemed_at,
        expiresAt=outcome.expires_at,
        remainingSeconds=0 if outcome.is_used else remaining_seconds(outcome.redeemed_at, now),
        isUsed=outcome.is_used,
        pointsSpent=outcome.points_spent,
        pointsAwarded=outcome.reward_points,
    )


@router.post("/finalize", response_model=FinalizeResponse)
async def finalize_redemption(
    payload: FinalizeRequest,
    scope: StaffScope = Depends(require_staff_scope(MemberRole.REDEMPTION_AGENT)),
    session: AsyncSession = Depends(get_session),
) -> FinalizeResponse:
    """Accept a customer's code for the caller's active organization."""

    service = RedemptionService(session)
    outcome = await service.finalize(payload.code.strip(), scope)
    _raise_for(outcome)
    return FinalizeResponse(
        success=True,
        usageId=outcome.usage_id,
        couponId=outcome.coupon_id,
        rewardPoints=outcome.reward_points,
    )


@router.get("/codes/{code}", response_model=CodePreviewResponse)
async def preview_code(
    code: str,
    scope: StaffScope = Depends(require_staff_scope(MemberRole.REDEMPTION_AGENT)),
    session: AsyncSession = Depends(get_session),
) -> CodePreviewResponse:
    service = RedemptionService(session)
    outcome = await service.inspect_code(code.strip(), scope)
    _raise_for(outcome)
    return CodePreviewResponse(
        usageId=outcome.usage_id,
        couponId=outcome.coupon_id,
        userId=outcome.user_id,
        redeemedAt=outcome.redeemed_at,
        expiresAt=outcome.expires_at,
        remainingSeconds=remaining_seconds(outcome.redeemed_at, utcnow()),
        rewardPoints=outcome.reward_points,
    )


@router.get("/status/{coupon_id}", response_model=UsageStatusResponse)
async def redemption_status(
    coupon_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> UsageStatusResponse:
    service = RedemptionService(session)
    current = await service.usage_status(user, coupon_id)
    pending = None
    if current.pending and current.pending_usage_id is not None:
        pending = PendingUsageResponse(
            usageId=current.pending_usage_id,
            code=current.pending_code,
            remainingSeconds=current.remaining_seconds,
        )
    return UsageStatusResponse(pending=current.pending, usedCount=current.used_count, pendingUsage=pending)


@router.get("/mine", response_model=list[UsageListItem])
async def list_my_usages(
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> list[UsageListItem]:
    service = RedemptionService(session)
    views = await service.list_user_usages(user.id, limit=limit)
    return [serialize_usage(view) for view in views]


@router.get("/feed")
async def stream_usage_feed(
    user: User = Depends(require_member_session),
    heartbeat_seconds: float | None = Query(default=None, alias="heartbeat", ge=1.0, le=60.0),
):
    """Push the caller's usage transitions (created, finalized, deleted)."""

    user_id = user.id
    interval = heartbeat_seconds or settings.redemption_feed_heartbeat_seconds
    feed = get_usage_feed()

    async def event_generator():
        try:
            async with feed.subscribe(user_id) as subscription:
                yield _format_sse("ready", {"userId": str(user_id)})
                while True:
                    try:
                        event = await asyncio.wait_for(subscription.get(), timeout=interval)
                    except asyncio.TimeoutError:
                        yield _format_sse("heartbeat", {"at": utcnow().isoformat()})
                        continue
                    yield _format_sse("usage", event.as_payload())
        except asyncio.CancelledError:  # pragma: no cover - client disconnected
            return

    return StreamingResponse(event_generator(), headers=_SSE_HEADERS, media_type="text/event-stream")


@router.get("/{usage_id}/countdown")
async def stream_countdown(
    usage_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Countdown for a pending code; ends on finalization, expiry or disconnect."""

    service = RedemptionService(session)
    usage = await service.get_user_usage(user, usage_id)
    if usage is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "Redemption not found."},
        )

    user_id = user.id
    redeemed_at = as_utc(usage.redeemed_at)
    already_used = bool(usage.is_used)

    async def cleanup(target_usage_id: UUID) -> None:
        async with session_factory() as cleanup_session:
            owner = await cleanup_session.get(User, user_id)
            outcome = await RedemptionService(cleanup_session).cancel_pending(owner, target_usage_id)
            if not outcome.ok:
                logger.info(
                    "Countdown cleanup skipped",
                    usage_id=str(target_usage_id),
                    reason=outcome.error.value,
                )

    async def event_generator():
        if already_used:
            yield _format_sse(
                CountdownState.FINALIZED_EXTERNALLY.value,
                {"usageId": str(usage_id), "state": CountdownState.FINALIZED_EXTERNALLY.value, "remainingSeconds": 0},
            )
            return
        try:
            async with RedemptionMonitor(
                usage_id=usage_id,
                user_id=user_id,
                redeemed_at=redeemed_at,
                cleanup=cleanup,
            ) as monitor:
                yield _format_sse(
                    "started",
                    {"usageId": str(usage_id), "expiresAt": expiry_deadline(redeemed_at).isoformat()},
                )
                async for frame in monitor.frames():
                    event_type = frame.state.value if frame.is_terminal else "tick"
                    yield _format_sse(event_type, frame.as_payload())
        except asyncio.CancelledError:  # pragma: no cover - client disconnected
            return

    return StreamingResponse(event_generator(), headers=_SSE_HEADERS, media_type="text/event-stream")


@router.delete("/{usage_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_redemption(
    usage_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Release a pending code (cancel or client-side expiry) and refund its cost."""

    service = RedemptionService(session)
    outcome = await service.cancel_pending(user, usage_id)
    _raise_for(outcome)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
