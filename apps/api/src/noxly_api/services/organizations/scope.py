"""Resolve the organization a staff member acts for on a given request."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.models.organization import MemberRole, MemberStatus, Organization, OrganizationMember
from noxly_api.models.user import User


@dataclass(frozen=True)
class StaffScope:
    """Explicit authority to act for one organization."""

    user_id: UUID
    organization_id: UUID
    roles: frozenset[MemberRole]
    is_owner: bool = False

    def allows(self, permission: MemberRole) -> bool:
        return self.is_owner or permission in self.roles


def _parse_roles(raw: object) -> frozenset[MemberRole]:
    roles: set[MemberRole] = set()
    for value in raw or []:
        try:
            roles.add(MemberRole(value))
        except ValueError:
            logger.warning("Ignoring unknown organization role", role=value)
    return frozenset(roles)


async def resolve_staff_scope(
    db: AsyncSession,
    user: User,
    organization_id: UUID,
    permission: MemberRole | None = None,
) -> StaffScope | None:
    """Return the caller's scope for ``organization_id`` or None when not permitted.

    Owners hold every permission. Members need an accepted membership and,
    when ``permission`` is given, that role.
    """

    organization = await db.get(Organization, organization_id)
    if organization is None:
        return None

    if organization.owner_id == user.id:
        return StaffScope(
            user_id=user.id,
            organization_id=organization_id,
            roles=frozenset(MemberRole),
            is_owner=True,
        )

    stmt = select(OrganizationMember).where(
        OrganizationMember.organization_id == organization_id,
        OrganizationMember.user_id == user.id,
    )
    result = await db.execute(stmt)
    member = result.scalar_one_or_none()
    if member is None or member.status != MemberStatus.ACCEPTED:
        return None

    scope = StaffScope(user_id=user.id, organization_id=organization_id, roles=_parse_roles(member.roles))
    if permission is not None and not scope.allows(permission):
        logger.info(
            "Staff member lacks permission",
            user_id=str(user.id),
            organization_id=str(organization_id),
            permission=permission.value,
        )
        return None
    return scope
