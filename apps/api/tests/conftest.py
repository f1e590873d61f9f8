import sys
from dataclasses import dataclass
from pathlib import Path
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from noxly_api.app import create_app  # noqa: E402
from noxly_api.db.base import Base  # noqa: E402
from noxly_api.db.session import get_session, get_session_factory  # noqa: E402
from noxly_api.models import (  # noqa: E402
    Coupon,
    LoyaltyPointBalance,
    MemberRole,
    MemberStatus,
    Organization,
    OrganizationMember,
    User,
)
from noxly_api.observability.redemptions import get_redemption_store  # noqa: E402
from noxly_api.services.organizations import StaffScope  # noqa: E402
from noxly_api.services.redemption.feed import UsageChangeFeed  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def locking_session_factory(tmp_path):
    """File-backed database whose transactions take the write lock up front.

    Concurrent sessions serialize on BEGIN IMMEDIATE the way row locks
    serialize competing writers on PostgreSQL.
    """

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        future=True,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_redemption_store():
    get_redemption_store().reset()
    yield
    get_redemption_store().reset()


@pytest.fixture
def feed() -> UsageChangeFeed:
    return UsageChangeFeed(queue_size=10)


@pytest.fixture
def fail_writes(monkeypatch):
    """Make ``AsyncSession.execute`` raise for DML of one kind against one model."""

    def _install(kind, model) -> None:
        real_execute = AsyncSession.execute

        async def execute(self, statement, *args, **kwargs):
            if isinstance(statement, kind) and statement.table.name == model.__tablename__:
                raise OperationalError(str(statement), {}, Exception("database is locked"))
            return await real_execute(self, statement, *args, **kwargs)

        monkeypatch.setattr(AsyncSession, "execute", execute)

    return _install


@dataclass
class World:
    """Ids of a small seeded dataset: one venue, its owner, an agent and a customer."""

    organization_id: UUID
    other_organization_id: UUID
    owner_id: UUID
    agent_id: UUID
    customer_id: UUID

    def scope(self, organization_id: UUID | None = None) -> StaffScope:
        return StaffScope(
            user_id=self.agent_id,
            organization_id=organization_id or self.organization_id,
            roles=frozenset({MemberRole.REDEMPTION_AGENT}),
        )


async def seed_world(factory: async_sessionmaker[AsyncSession]) -> World:
    async with factory() as session:
        owner = User(email="owner@noxly.test")
        agent = User(email="agent@noxly.test")
        customer = User(email="customer@noxly.test")
        session.add_all([owner, agent, customer])
        await session.flush()

        venue = Organization(name="Club Aurora", owner_id=owner.id)
        other = Organization(name="Bar Nebula", owner_id=owner.id)
        session.add_all([venue, other])
        await session.flush()

        session.add(
            OrganizationMember(
                organization_id=venue.id,
                user_id=agent.id,
                status=MemberStatus.ACCEPTED,
                roles=[MemberRole.REDEMPTION_AGENT.value, MemberRole.VIEWER.value],
            )
        )
        await session.commit()
        return World(
            organization_id=venue.id,
            other_organization_id=other.id,
            owner_id=owner.id,
            agent_id=agent.id,
            customer_id=customer.id,
        )


async def add_coupon(factory: async_sessionmaker[AsyncSession], organization_id: UUID, **fields) -> UUID:
    values = {"title": "Free drink", "is_code_required": True, "max_uses_per_user": 1}
    values.update(fields)
    async with factory() as session:
        coupon = Coupon(organization_id=organization_id, **values)
        session.add(coupon)
        await session.commit()
        return coupon.id


async def set_points(
    factory: async_sessionmaker[AsyncSession], user_id: UUID, organization_id: UUID, points: int
) -> None:
    async with factory() as session:
        session.add(LoyaltyPointBalance(user_id=user_id, organization_id=organization_id, points=points))
        await session.commit()


@pytest_asyncio.fixture
async def world(session_factory) -> World:
    return await seed_world(session_factory)


@pytest.fixture
def make_coupon(session_factory):
    async def _make(organization_id: UUID, **fields) -> UUID:
        return await add_coupon(session_factory, organization_id, **fields)

    return _make


@pytest.fixture
def grant_points(session_factory):
    async def _grant(user_id: UUID, organization_id: UUID, points: int) -> None:
        await set_points(session_factory, user_id, organization_id, points)

    return _grant


@pytest_asyncio.fixture
async def race_world(locking_session_factory) -> World:
    return await seed_world(locking_session_factory)
