"""Consumer challenge progress and superadmin challenge management."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.api.dependencies.security import require_admin_api_key
from noxly_api.api.dependencies.session import optional_member_session, require_member_session
from noxly_api.api.errors import bad_request, error_exception
from noxly_api.db.session import get_session
from noxly_api.models.challenge import Challenge, ChallengeConditionType
from noxly_api.models.user import User
from noxly_api.services.challenges import ChallengeProgressView, ChallengeService


router = APIRouter(tags=["challenges"])


class ChallengeResponse(BaseModel):
    id: UUID
    title: str
    description: Optional[str]
    isActive: bool
    rewardPoints: int
    rewardOrganizationId: Optional[UUID]
    conditionType: str
    conditionValue: int
    conditionOrganizations: list[UUID]
    createdAt: Optional[datetime]


class ChallengeProgressResponse(ChallengeResponse):
    progressValue: int
    progressPercentage: int
    isCompleted: bool
    isRewardClaimed: bool
    rewardOrganizationName: Optional[str]


class ClaimResponse(BaseModel):
    challengeId: UUID
    rewardPoints: int
    organizationId: Optional[UUID]


class ChallengeCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    isActive: bool = True
    rewardPoints: int = 0
    rewardOrganizationId: Optional[UUID] = None
    conditionType: ChallengeConditionType
    conditionValue: int
    conditionOrganizations: list[UUID] = Field(default_factory=list)


class ChallengeUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    isActive: Optional[bool] = None
    rewardPoints: Optional[int] = None
    rewardOrganizationId: Optional[UUID] = None
    conditionType: Optional[ChallengeConditionType] = None
    conditionValue: Optional[int] = None
    conditionOrganizations: Optional[list[UUID]] = None


_FIELD_MAP = {
    "title": "title",
    "description": "description",
    "isActive": "is_active",
    "rewardPoints": "reward_points",
    "rewardOrganizationId": "reward_organization_id",
    "conditionType": "condition_type",
    "conditionValue": "condition_value",
    "conditionOrganizations": "condition_organizations",
}


def _serialize_challenge(challenge: Challenge) -> dict:
    return {
        "id": challenge.id,
        "title": challenge.title,
        "description": challenge.description,
        "isActive": bool(challenge.is_active),
        "rewardPoints": int(challenge.reward_points or 0),
        "rewardOrganizationId": challenge.reward_organization_id,
        "conditionType": challenge.condition_type,
        "conditionValue": int(challenge.condition_value),
        "conditionOrganizations": [UUID(str(value)) for value in challenge.condition_organizations or []],
        "createdAt": challenge.created_at,
    }


def _serialize_progress(view: ChallengeProgressView) -> ChallengeProgressResponse:
    return ChallengeProgressResponse(
        **_serialize_challenge(view.challenge),
        progressValue=view.progress_value,
        progressPercentage=view.progress_percentage,
        isCompleted=view.is_completed,
        isRewardClaimed=view.is_reward_claimed,
        rewardOrganizationName=view.reward_organization_name,
    )


@router.get("/challenges", response_model=list[ChallengeProgressResponse])
async def list_challenges(
    user: User | None = Depends(optional_member_session),
    session: AsyncSession = Depends(get_session),
) -> list[ChallengeProgressResponse]:
    """Active challenges with the caller's progress (zero for anonymous callers)."""

    service = ChallengeService(session)
    views = await service.list_with_progress(user.id if user else None)
    return [_serialize_progress(view) for view in views]


@router.post("/challenges/{challenge_id}/claim", response_model=ClaimResponse)
async def claim_challenge_reward(
    challenge_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> ClaimResponse:
    service = ChallengeService(session)
    outcome = await service.claim_reward(user, challenge_id)
    if outcome.error is not None:
        raise error_exception(outcome.error, outcome.detail)
    return ClaimResponse(
        challengeId=challenge_id,
        rewardPoints=outcome.reward_points,
        organizationId=outcome.organization_id,
    )


@router.get(
    "/admin/challenges",
    response_model=list[ChallengeResponse],
    dependencies=[Depends(require_admin_api_key)],
)
async def list_all_challenges(session: AsyncSession = Depends(get_session)) -> list[ChallengeResponse]:
    service = ChallengeService(session)
    return [ChallengeResponse(**_serialize_challenge(item)) for item in await service.list_challenges()]


@router.post(
    "/admin/challenges",
    response_model=ChallengeResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_challenge(
    payload: ChallengeCreateRequest,
    session: AsyncSession = Depends(get_session),
) -> ChallengeResponse:
    service = ChallengeService(session)
    try:
        challenge = await service.create_challenge(
            title=payload.title,
            description=payload.description,
            is_active=payload.isActive,
            reward_points=payload.rewardPoints,
            reward_organization_id=payload.rewardOrganizationId,
            condition_type=payload.conditionType.value,
            condition_value=payload.conditionValue,
            condition_organizations=payload.conditionOrganizations,
        )
    except ValueError as error:
        raise bad_request(error) from error
    return ChallengeResponse(**_serialize_challenge(challenge))


@router.patch(
    "/admin/challenges/{challenge_id}",
    response_model=ChallengeResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_challenge(
    challenge_id: UUID,
    payload: ChallengeUpdateRequest,
    session: AsyncSession = Depends(get_session),
) -> ChallengeResponse:
    changes = {
        _FIELD_MAP[key]: (value.value if isinstance(value, ChallengeConditionType) else value)
        for key, value in payload.model_dump(exclude_unset=True).items()
    }
    service = ChallengeService(session)
    try:
        challenge = await service.update_challenge(challenge_id, changes)
    except ValueError as error:
        raise bad_request(error) from error
    if challenge is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Challenge not found")
    return ChallengeResponse(**_serialize_challenge(challenge))


@router.post(
    "/admin/challenges/{challenge_id}/toggle",
    response_model=ChallengeResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def toggle_challenge(
    challenge_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> ChallengeResponse:
    service = ChallengeService(session)
    challenge = await service.toggle_challenge(challenge_id)
    if challenge is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Challenge not found")
    return ChallengeResponse(**_serialize_challenge(challenge))


@router.delete(
    "/admin/challenges/{challenge_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin_api_key)],
)
async def delete_challenge(
    challenge_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> Response:
    service = ChallengeService(session)
    if not await service.delete_challenge(challenge_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Challenge not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
