"""Public coupon listing and staff coupon management."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.api.dependencies.session import optional_member_session
from noxly_api.api.dependencies.staff import require_staff_scope
from noxly_api.api.errors import bad_request
from noxly_api.db.session import get_session
from noxly_api.models.coupon import Coupon
from noxly_api.models.organization import MemberRole
from noxly_api.models.user import User
from noxly_api.services.coupons import CouponService, PublicCouponView
from noxly_api.services.organizations import StaffScope


router = APIRouter(prefix="/coupons", tags=["coupons"])


# API field name -> model column
_FIELD_MAP = {
    "title": "title",
    "shortDescription": "short_description",
    "description": "description",
    "couponCode": "coupon_code",
    "imageUrl": "image_url",
    "isCodeRequired": "is_code_required",
    "maxUsesPerUser": "max_uses_per_user",
    "totalMaxUses": "total_max_uses",
    "pointsCost": "points_cost",
    "pointsReward": "points_reward",
    "expiryDate": "expiry_date",
    "isActive": "is_active",
}


class CouponCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    shortDescription: Optional[str] = None
    description: Optional[str] = None
    couponCode: Optional[str] = None
    imageUrl: Optional[str] = None
    isCodeRequired: bool = True
    maxUsesPerUser: int = 1
    totalMaxUses: Optional[int] = None
    pointsCost: int = 0
    pointsReward: int = 0
    expiryDate: Optional[datetime] = None
    isActive: bool = True


class CouponUpdateRequest(BaseModel):
    title: Optional[str] = None
    shortDescription: Optional[str] = None
    description: Optional[str] = None
    couponCode: Optional[str] = None
    imageUrl: Optional[str] = None
    isCodeRequired: Optional[bool] = None
    maxUsesPerUser: Optional[int] = None
    totalMaxUses: Optional[int] = None
    pointsCost: Optional[int] = None
    pointsReward: Optional[int] = None
    expiryDate: Optional[datetime] = None
    isActive: Optional[bool] = None


class CouponResponse(BaseModel):
    id: UUID
    organizationId: UUID
    title: str
    shortDescription: Optional[str]
    description: Optional[str]
    couponCode: Optional[str]
    imageUrl: Optional[str]
    isCodeRequired: bool
    maxUsesPerUser: int
    totalMaxUses: Optional[int]
    pointsCost: int
    pointsReward: int
    expiryDate: Optional[datetime]
    isActive: bool
    isArchived: bool


class RedemptionStateResponse(BaseModel):
    usedCount: int
    pending: bool
    canRedeem: bool
    reason: Optional[str]


class PublicCouponResponse(CouponResponse):
    organizationName: Optional[str]
    redemption: RedemptionStateResponse


def _serialize_coupon(coupon: Coupon) -> dict[str, Any]:
    return {
        "id": coupon.id,
        "organizationId": coupon.organization_id,
        "title": coupon.title,
        "shortDescription": coupon.short_description,
        "description": coupon.description,
        "couponCode": coupon.coupon_code,
        "imageUrl": coupon.image_url,
        "isCodeRequired": bool(coupon.is_code_required),
        "maxUsesPerUser": int(coupon.max_uses_per_user or 0),
        "totalMaxUses": coupon.total_max_uses,
        "pointsCost": int(coupon.points_cost or 0),
        "pointsReward": int(coupon.points_reward or 0),
        "expiryDate": coupon.expiry_date,
        "isActive": bool(coupon.is_active),
        "isArchived": bool(coupon.is_archived),
    }


def _serialize_public(view: PublicCouponView) -> PublicCouponResponse:
    return PublicCouponResponse(
        **_serialize_coupon(view.coupon),
        organizationName=view.organization_name,
        redemption=RedemptionStateResponse(
            usedCount=view.state.used_count,
            pending=view.state.pending,
            canRedeem=view.state.can_redeem,
            reason=view.state.reason,
        ),
    )


def _to_columns(data: dict[str, Any]) -> dict[str, Any]:
    return {_FIELD_MAP[key]: value for key, value in data.items() if key in _FIELD_MAP}


async def _load_coupon(service: CouponService, coupon_id: UUID, scope: StaffScope) -> Coupon:
    coupon = await service.get_coupon(coupon_id, organization_id=scope.organization_id)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    return coupon


@router.get("", response_model=list[PublicCouponResponse])
async def list_public_coupons(
    user: User | None = Depends(optional_member_session),
    session: AsyncSession = Depends(get_session),
) -> list[PublicCouponResponse]:
    """Redeemable coupons, newest first, with the caller's redemption state."""

    service = CouponService(session)
    views = await service.list_public_coupons(user)
    return [_serialize_public(view) for view in views]


@router.get("/manage", response_model=list[CouponResponse])
async def list_organization_coupons(
    include_archived: bool = Query(default=False, alias="includeArchived"),
    scope: StaffScope = Depends(require_staff_scope(MemberRole.COUPON_MANAGER)),
    session: AsyncSession = Depends(get_session),
) -> list[CouponResponse]:
    service = CouponService(session)
    coupons = await service.list_organization_coupons(scope.organization_id, include_archived=include_archived)
    return [CouponResponse(**_serialize_coupon(coupon)) for coupon in coupons]


@router.post("/manage", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    payload: CouponCreateRequest,
    scope: StaffScope = Depends(require_staff_scope(MemberRole.COUPON_MANAGER)),
    session: AsyncSession = Depends(get_session),
) -> CouponResponse:
    service = CouponService(session)
    try:
        coupon = await service.create_coupon(scope.organization_id, **_to_columns(payload.model_dump()))
    except ValueError as error:
        raise bad_request(error) from error
    return CouponResponse(**_serialize_coupon(coupon))


@router.patch("/manage/{coupon_id}", response_model=CouponResponse)
async def update_coupon(
    coupon_id: UUID,
    payload: CouponUpdateRequest,
    scope: StaffScope = Depends(require_staff_scope(MemberRole.COUPON_MANAGER)),
    session: AsyncSession = Depends(get_session),
) -> CouponResponse:
    service = CouponService(session)
    coupon = await _load_coupon(service, coupon_id, scope)
    try:
        coupon = await service.update_coupon(coupon, _to_columns(payload.model_dump(exclude_unset=True)))
    except ValueError as error:
        raise bad_request(error) from error
    return CouponResponse(**_serialize_coupon(coupon))


@router.post("/manage/{coupon_id}/archive", response_model=CouponResponse)
async def archive_coupon(
    coupon_id: UUID,
    restore: bool = Query(default=False),
    scope: StaffScope = Depends(require_staff_scope(MemberRole.COUPON_MANAGER)),
    session: AsyncSession = Depends(get_session),
) -> CouponResponse:
    service = CouponService(session)
    coupon = await _load_coupon(service, coupon_id, scope)
    coupon = await service.archive_coupon(coupon, archived=not restore)
    return CouponResponse(**_serialize_coupon(coupon))
