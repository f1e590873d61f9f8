"""Staff views scoped to one organization."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.api.dependencies.staff import require_path_staff_scope
from noxly_api.api.v1.endpoints.redemptions import UsageListItem, serialize_usage
from noxly_api.db.session import get_session
from noxly_api.models.organization import MemberRole
from noxly_api.services.organizations import StaffScope
from noxly_api.services.redemption.service import RedemptionService


router = APIRouter(prefix="/organizations", tags=["organizations"])


@router.get("/{organization_id}/usages", response_model=list[UsageListItem])
async def list_organization_usages(
    limit: int = Query(default=100, ge=1, le=500),
    scope: StaffScope = Depends(require_path_staff_scope(MemberRole.VIEWER)),
    session: AsyncSession = Depends(get_session),
) -> list[UsageListItem]:
    """Newest-first usages of the organization's coupons with live status."""

    service = RedemptionService(session)
    views = await service.list_organization_usages(scope.organization_id, limit=limit)
    return [serialize_usage(view) for view in views]
