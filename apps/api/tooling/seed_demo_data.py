"""Seed a demo venue, its staff, a customer, coupons and a challenge."""

from __future__ import annotations

import argparse
import asyncio
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from noxly_api.core.settings import settings
from noxly_api.models import (
    Challenge,
    ChallengeConditionType,
    Coupon,
    LoyaltyPointBalance,
    MemberRole,
    MemberStatus,
    Organization,
    OrganizationMember,
    User,
    UserRoleEnum,
)


class SeedUser(TypedDict):
    email: str
    first_name: str
    role: str


DEMO_USERS: dict[str, SeedUser] = {
    "owner": {
        "email": os.getenv("DEMO_OWNER_EMAIL", "owner@noxly.dev").lower(),
        "first_name": "Olivia",
        "role": UserRoleEnum.USER.value,
    },
    "agent": {
        "email": os.getenv("DEMO_AGENT_EMAIL", "door@noxly.dev").lower(),
        "first_name": "Dario",
        "role": UserRoleEnum.USER.value,
    },
    "customer": {
        "email": os.getenv("DEMO_CUSTOMER_EMAIL", "guest@noxly.dev").lower(),
        "first_name": "Gia",
        "role": UserRoleEnum.USER.value,
    },
    "superadmin": {
        "email": os.getenv("DEMO_SUPERADMIN_EMAIL", "admin@noxly.dev").lower(),
        "first_name": "Ada",
        "role": UserRoleEnum.SUPERADMIN.value,
    },
}

DEMO_COUPONS = [
    {"title": "Free entry before midnight", "is_code_required": True, "points_reward": 10},
    {"title": "Two-for-one cocktails", "is_code_required": True, "points_cost": 30, "max_uses_per_user": 3},
    {"title": "Welcome shot", "is_code_required": False, "points_reward": 5},
]


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed NOXLY demo data")
    parser.add_argument("--venue", default="Club Aurora", help="Demo organization name")
    parser.add_argument("--points", type=int, default=50, help="Starting customer balance at the venue")
    return parser.parse_args()


async def _ensure_user(session: AsyncSession, seed: SeedUser) -> User:
    with session.no_autoflush:
        existing = await session.execute(select(User).where(User.email == seed["email"]))
    record = existing.scalar_one_or_none()
    if record:
        record.first_name = seed["first_name"]
        record.role = seed["role"]
        return record

    record = User(email=seed["email"], first_name=seed["first_name"], role=seed["role"])
    session.add(record)
    await session.flush()
    return record


async def _ensure_venue(session: AsyncSession, name: str, owner: User) -> Organization:
    existing = await session.execute(select(Organization).where(Organization.name == name))
    venue = existing.scalar_one_or_none()
    if venue is None:
        venue = Organization(name=name, owner_id=owner.id, description="Demo venue")
        session.add(venue)
        await session.flush()
    return venue


async def seed_demo(session: AsyncSession, *, venue_name: str, starting_points: int) -> Organization:
    users = {key: await _ensure_user(session, seed) for key, seed in DEMO_USERS.items()}
    venue = await _ensure_venue(session, venue_name, users["owner"])

    membership = await session.execute(
        select(OrganizationMember).where(
            OrganizationMember.organization_id == venue.id,
            OrganizationMember.user_id == users["agent"].id,
        )
    )
    if membership.scalar_one_or_none() is None:
        session.add(
            OrganizationMember(
                organization_id=venue.id,
                user_id=users["agent"].id,
                status=MemberStatus.ACCEPTED,
                roles=[MemberRole.REDEMPTION_AGENT.value, MemberRole.VIEWER.value],
            )
        )

    titles = set((await session.execute(select(Coupon.title).where(Coupon.organization_id == venue.id))).scalars())
    for fields in DEMO_COUPONS:
        if fields["title"] not in titles:
            session.add(Coupon(organization_id=venue.id, **fields))

    balance = await session.execute(
        select(LoyaltyPointBalance).where(
            LoyaltyPointBalance.user_id == users["customer"].id,
            LoyaltyPointBalance.organization_id == venue.id,
        )
    )
    if balance.scalar_one_or_none() is None:
        session.add(
            LoyaltyPointBalance(user_id=users["customer"].id, organization_id=venue.id, points=starting_points)
        )

    challenge = await session.execute(select(Challenge).where(Challenge.title == "Night owl"))
    if challenge.scalar_one_or_none() is None:
        session.add(
            Challenge(
                title="Night owl",
                description="Redeem three coupons at the venue",
                reward_points=25,
                reward_organization_id=venue.id,
                condition_type=ChallengeConditionType.REDEEM_COUNT.value,
                condition_value=3,
                condition_organizations=[str(venue.id)],
            )
        )

    await session.commit()
    return venue


async def main() -> None:
    args = _parse_args()
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            venue = await seed_demo(session, venue_name=args.venue, starting_points=args.points)
        print(f"Demo data ready for {venue.name} ({venue.id})")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
