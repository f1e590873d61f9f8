"""Per-request organization scope for staff endpoints."""

from __future__ import annotations

from typing import Awaitable, Callable
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.api.dependencies.session import require_member_session
from noxly_api.db.session import get_session
from noxly_api.models.organization import MemberRole
from noxly_api.models.user import User
from noxly_api.services.organizations import StaffScope, resolve_staff_scope


async def _scope_or_403(
    db: AsyncSession, user: User, organization_id: UUID, permission: MemberRole
) -> StaffScope:
    scope = await resolve_staff_scope(db, user, organization_id, permission)
    if scope is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "forbidden",
                "message": f"The {permission.value} permission is required for this organization.",
            },
        )
    return scope


def require_staff_scope(permission: MemberRole) -> Callable[..., Awaitable[StaffScope]]:
    """Dependency factory resolving the active organization from ``X-Organization-Id``."""

    async def dependency(
        organization_id: UUID | None = Header(None, alias="X-Organization-Id"),
        user: User = Depends(require_member_session),
        db: AsyncSession = Depends(get_session),
    ) -> StaffScope:
        if organization_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "missing_organization", "message": "X-Organization-Id header is required."},
            )
        return await _scope_or_403(db, user, organization_id, permission)

    return dependency


def require_path_staff_scope(permission: MemberRole) -> Callable[..., Awaitable[StaffScope]]:
    """Same check for routes carrying the organization id in the path."""

    async def dependency(
        organization_id: UUID,
        user: User = Depends(require_member_session),
        db: AsyncSession = Depends(get_session),
    ) -> StaffScope:
        return await _scope_or_403(db, user, organization_id, permission)

    return dependency
