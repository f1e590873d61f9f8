"""Loyalty point balances for the signed-in member."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.api.dependencies.session import require_member_session
from noxly_api.db.session import get_session
from noxly_api.models.user import User
from noxly_api.services.loyalty import LoyaltyPointsService


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class PointBalanceResponse(BaseModel):
    organizationId: UUID
    organizationName: Optional[str]
    points: int


class PointsSummaryResponse(BaseModel):
    totalPoints: int
    balances: list[PointBalanceResponse]


class PointTransactionResponse(BaseModel):
    id: UUID
    organizationId: UUID
    amount: int
    balanceAfter: int
    reason: str
    referenceId: Optional[str]
    occurredAt: datetime


@router.get("/points", response_model=PointsSummaryResponse)
async def get_points(
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> PointsSummaryResponse:
    service = LoyaltyPointsService(session)
    balances = await service.list_balances(user.id)
    return PointsSummaryResponse(
        totalPoints=await service.total_points(user.id),
        balances=[
            PointBalanceResponse(
                organizationId=balance.organization_id,
                organizationName=balance.organization_name,
                points=balance.points,
            )
            for balance in balances
        ],
    )


@router.get("/points/transactions", response_model=list[PointTransactionResponse])
async def list_point_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> list[PointTransactionResponse]:
    service = LoyaltyPointsService(session)
    entries = await service.list_transactions(user.id, limit=limit)
    return [
        PointTransactionResponse(
            id=entry.id,
            organizationId=entry.organization_id,
            amount=entry.amount,
            balanceAfter=entry.balance_after,
            reason=entry.reason.value if hasattr(entry.reason, "value") else str(entry.reason),
            referenceId=entry.reference_id,
            occurredAt=entry.occurred_at,
        )
        for entry in entries
    ]
