import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import Delete, Update, func, select

from noxly_api.models import (
    Coupon,
    CouponUsage,
    LoyaltyPointBalance,
    LoyaltyPointReason,
    LoyaltyPointTransaction,
    User,
)
from noxly_api.observability.redemptions import get_redemption_store
from noxly_api.services.loyalty import LoyaltyPointsService
from noxly_api.services.redemption.expiry import UsageDisplayStatus
from noxly_api.services.redemption.feed import UsageChangeType
from noxly_api.services.redemption.outcomes import RedemptionErrorKind
from noxly_api.services.redemption.service import RedemptionService


T0 = datetime(2026, 10, 18, 22, 0, 0, tzinfo=timezone.utc)


def fixed_code(code: str):
    return lambda length: code


def code_sequence(*codes: str):
    iterator = iter(codes)
    return lambda length: next(iterator)


async def initiate(factory, user_id, coupon_id, *, now=T0, **options):
    async with factory() as session:
        user = await session.get(User, user_id)
        return await RedemptionService(session, **options).initiate(user, coupon_id, now=now)


async def finalize(factory, code, scope, *, now, **options):
    async with factory() as session:
        return await RedemptionService(session, **options).finalize(code, scope, now=now)


async def balance(factory, user_id, organization_id) -> int:
    async with factory() as session:
        return await LoyaltyPointsService(session).get_balance(user_id, organization_id)


async def usage_rows(factory, coupon_id) -> list[CouponUsage]:
    async with factory() as session:
        result = await session.execute(select(CouponUsage).where(CouponUsage.coupon_id == coupon_id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_issue_and_finalize_code_within_window(session_factory, world, make_coupon, feed) -> None:
    coupon_id = await make_coupon(world.organization_id, points_reward=10)

    async with feed.subscribe(world.customer_id) as subscription:
        issued = await initiate(
            session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"), feed=feed
        )
        assert issued.ok
        assert issued.code == "482913"
        assert issued.is_used is False
        assert issued.expires_at == T0 + timedelta(seconds=180)
        assert subscription.get_nowait().change is UsageChangeType.CREATED

        result = await finalize(session_factory, "482913", world.scope(), now=T0 + timedelta(seconds=60), feed=feed)
        assert result.ok
        assert result.usage_id == issued.usage_id
        assert result.reward_points == 10
        finalized_event = subscription.get_nowait()
        assert finalized_event.change is UsageChangeType.FINALIZED
        assert finalized_event.is_used is True

    [usage] = await usage_rows(session_factory, coupon_id)
    assert usage.is_used is True
    assert usage.finalized_by_user_id == world.agent_id
    assert usage.points_awarded == 10
    assert await balance(session_factory, world.customer_id, world.organization_id) == 10

    snapshot = get_redemption_store().snapshot()
    assert snapshot.initiations["issued"] == 1
    assert snapshot.finalizations["finalized"] == 1


@pytest.mark.asyncio
async def test_code_is_finalized_at_most_once(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id, points_reward=10)
    await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))

    first = await finalize(session_factory, "482913", world.scope(), now=T0 + timedelta(seconds=30))
    second = await finalize(session_factory, "482913", world.scope(), now=T0 + timedelta(seconds=31))

    assert first.ok
    assert second.error is RedemptionErrorKind.ALREADY_REDEEMED
    assert await balance(session_factory, world.customer_id, world.organization_id) == 10


@pytest.mark.asyncio
async def test_window_boundary_at_finalization(session_factory, world, make_coupon) -> None:
    early = await make_coupon(world.organization_id, title="Early")
    late = await make_coupon(world.organization_id, title="Late")
    await initiate(session_factory, world.customer_id, early, code_generator=fixed_code("100179"))
    await initiate(session_factory, world.customer_id, late, code_generator=fixed_code("100181"))

    on_time = await finalize(session_factory, "100179", world.scope(), now=T0 + timedelta(seconds=179))
    too_late = await finalize(session_factory, "100181", world.scope(), now=T0 + timedelta(seconds=181))

    assert on_time.ok
    assert too_late.error is RedemptionErrorKind.EXPIRED
    [still_pending] = await usage_rows(session_factory, late)
    assert still_pending.is_used is False


@pytest.mark.asyncio
async def test_finalize_rejects_bad_input_before_lookup(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id)
    await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))
    now = T0 + timedelta(seconds=10)

    assert (await finalize(session_factory, "482913", None, now=now)).error is RedemptionErrorKind.UNAUTHORIZED
    assert (await finalize(session_factory, "48a913", world.scope(), now=now)).error is RedemptionErrorKind.INVALID_CODE
    assert (await finalize(session_factory, "12345", world.scope(), now=now)).error is RedemptionErrorKind.INVALID_CODE
    assert (await finalize(session_factory, "999999", world.scope(), now=now)).error is RedemptionErrorKind.INVALID_CODE


@pytest.mark.asyncio
async def test_code_from_another_organization_is_refused(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id)
    await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))

    result = await finalize(
        session_factory,
        "482913",
        world.scope(world.other_organization_id),
        now=T0 + timedelta(seconds=10),
    )

    assert result.error is RedemptionErrorKind.WRONG_ORGANIZATION
    [usage] = await usage_rows(session_factory, coupon_id)
    assert usage.is_used is False


@pytest.mark.asyncio
async def test_inspect_code_does_not_mutate(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id, points_reward=7)
    issued = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))

    async with session_factory() as session:
        preview = await RedemptionService(session).inspect_code(
            "482913", world.scope(), now=T0 + timedelta(seconds=5)
        )

    assert preview.ok
    assert preview.usage_id == issued.usage_id
    assert preview.user_id == world.customer_id
    assert preview.reward_points == 7
    [usage] = await usage_rows(session_factory, coupon_id)
    assert usage.is_used is False


@pytest.mark.asyncio
async def test_second_initiation_returns_existing_pending_code(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id)
    first = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))
    second = await initiate(
        session_factory,
        world.customer_id,
        coupon_id,
        now=T0 + timedelta(seconds=20),
        code_generator=fixed_code("555555"),
    )

    assert second.error is RedemptionErrorKind.ALREADY_PENDING
    assert second.usage_id == first.usage_id
    assert second.code == "482913"
    assert len(await usage_rows(session_factory, coupon_id)) == 1


@pytest.mark.asyncio
async def test_collision_draws_a_new_code(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id)
    async with session_factory() as session:
        neighbour = User(email="neighbour@noxly.test")
        session.add(neighbour)
        await session.commit()
        neighbour_id = neighbour.id

    held = await initiate(session_factory, neighbour_id, coupon_id, code_generator=fixed_code("111111"))
    fresh = await initiate(
        session_factory,
        world.customer_id,
        coupon_id,
        now=T0 + timedelta(seconds=5),
        code_generator=code_sequence("111111", "111111", "222222"),
    )

    assert held.code == "111111"
    assert fresh.ok
    assert fresh.code == "222222"


@pytest.mark.asyncio
async def test_recently_finalized_code_is_not_reissued(session_factory, world, make_coupon) -> None:
    first_coupon = await make_coupon(world.organization_id, title="First")
    second_coupon = await make_coupon(world.organization_id, title="Second")
    await initiate(session_factory, world.customer_id, first_coupon, code_generator=fixed_code("333333"))
    await finalize(session_factory, "333333", world.scope(), now=T0 + timedelta(seconds=10))

    result = await initiate(
        session_factory,
        world.customer_id,
        second_coupon,
        now=T0 + timedelta(seconds=20),
        code_generator=code_sequence("333333", "444444"),
    )

    assert result.code == "444444"


@pytest.mark.asyncio
async def test_code_allocation_gives_up_after_max_attempts(session_factory, world, make_coupon) -> None:
    first_coupon = await make_coupon(world.organization_id, title="First")
    second_coupon = await make_coupon(world.organization_id, title="Second")
    await initiate(session_factory, world.customer_id, first_coupon, code_generator=fixed_code("777777"))

    result = await initiate(
        session_factory,
        world.customer_id,
        second_coupon,
        code_generator=fixed_code("777777"),
        max_code_attempts=3,
    )

    assert result.error is RedemptionErrorKind.CODE_GENERATION_FAILED
    assert await usage_rows(session_factory, second_coupon) == []


@pytest.mark.asyncio
async def test_per_user_limit_counts_finalized_usages(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id, max_uses_per_user=2)

    for index, code in enumerate(("600001", "600002")):
        moment = T0 + timedelta(minutes=index * 5)
        issued = await initiate(
            session_factory, world.customer_id, coupon_id, now=moment, code_generator=fixed_code(code)
        )
        assert issued.ok
        done = await finalize(session_factory, code, world.scope(), now=moment + timedelta(seconds=30))
        assert done.ok

    third = await initiate(
        session_factory,
        world.customer_id,
        coupon_id,
        now=T0 + timedelta(minutes=15),
        code_generator=fixed_code("600003"),
    )
    assert third.error is RedemptionErrorKind.LIMIT_REACHED


@pytest.mark.asyncio
async def test_unavailable_coupons_are_rejected(session_factory, world, make_coupon) -> None:
    inactive = await make_coupon(world.organization_id, is_active=False)
    lapsed = await make_coupon(world.organization_id, expiry_date=T0 - timedelta(days=1))
    exhausted = await make_coupon(world.organization_id, total_max_uses=1, is_code_required=False)
    await initiate(session_factory, world.owner_id, exhausted)

    for coupon_id in (inactive, lapsed, exhausted, uuid4()):
        result = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))
        assert result.error is RedemptionErrorKind.COUPON_UNAVAILABLE


@pytest.mark.asyncio
async def test_anonymous_initiation_is_unauthorized(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id)
    async with session_factory() as session:
        result = await RedemptionService(session).initiate(None, coupon_id, now=T0)

    assert result.error is RedemptionErrorKind.UNAUTHORIZED
    assert get_redemption_store().snapshot().initiations["unauthorized"] == 1


@pytest.mark.asyncio
async def test_cost_is_debited_on_issue_and_kept_on_finalize(session_factory, world, make_coupon, grant_points) -> None:
    coupon_id = await make_coupon(world.organization_id, points_cost=20)
    await grant_points(world.customer_id, world.organization_id, 50)

    issued = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))
    assert issued.points_spent == 20
    assert await balance(session_factory, world.customer_id, world.organization_id) == 30

    await finalize(session_factory, "482913", world.scope(), now=T0 + timedelta(seconds=30))
    assert await balance(session_factory, world.customer_id, world.organization_id) == 30


@pytest.mark.asyncio
async def test_insufficient_points_leaves_no_trace(session_factory, world, make_coupon, grant_points) -> None:
    coupon_id = await make_coupon(world.organization_id, points_cost=100)
    await grant_points(world.customer_id, world.organization_id, 50)

    result = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))

    assert result.error is RedemptionErrorKind.INSUFFICIENT_POINTS
    assert await usage_rows(session_factory, coupon_id) == []
    assert await balance(session_factory, world.customer_id, world.organization_id) == 50


@pytest.mark.asyncio
async def test_stale_pending_usage_is_released_on_reinitiation(
    session_factory, world, make_coupon, grant_points, feed
) -> None:
    coupon_id = await make_coupon(world.organization_id, points_cost=20)
    await grant_points(world.customer_id, world.organization_id, 50)
    first = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))

    async with feed.subscribe(world.customer_id) as subscription:
        second = await initiate(
            session_factory,
            world.customer_id,
            coupon_id,
            now=T0 + timedelta(seconds=200),
            code_generator=fixed_code("482913"),
            feed=feed,
        )
        changes = [subscription.get_nowait().change, subscription.get_nowait().change]

    assert second.ok
    assert second.usage_id != first.usage_id
    assert changes == [UsageChangeType.DELETED, UsageChangeType.CREATED]
    assert await balance(session_factory, world.customer_id, world.organization_id) == 30
    [usage] = await usage_rows(session_factory, coupon_id)
    assert usage.id == second.usage_id

    async with session_factory() as session:
        reasons = (
            await session.execute(
                select(LoyaltyPointTransaction.reason, LoyaltyPointTransaction.amount).order_by(
                    LoyaltyPointTransaction.occurred_at
                )
            )
        ).all()
    assert sorted((reason, amount) for reason, amount in reasons) == sorted(
        [
            (LoyaltyPointReason.COUPON_COST, -20),
            (LoyaltyPointReason.COUPON_REFUND, 20),
            (LoyaltyPointReason.COUPON_COST, -20),
        ]
    )


@pytest.mark.asyncio
async def test_code_less_coupon_is_redeemed_instantly(session_factory, world, make_coupon, feed) -> None:
    coupon_id = await make_coupon(world.organization_id, is_code_required=False, points_reward=5)

    async with feed.subscribe(world.customer_id) as subscription:
        result = await initiate(session_factory, world.customer_id, coupon_id, feed=feed)
        event = subscription.get_nowait()

    assert result.ok
    assert result.is_used is True
    assert result.code is None
    assert result.reward_points == 5
    assert event.change is UsageChangeType.FINALIZED
    assert await balance(session_factory, world.customer_id, world.organization_id) == 5

    again = await initiate(session_factory, world.customer_id, coupon_id, now=T0 + timedelta(seconds=1))
    assert again.error is RedemptionErrorKind.LIMIT_REACHED
    assert get_redemption_store().snapshot().initiations["redeemed"] == 1


@pytest.mark.asyncio
async def test_cancel_pending_refunds_and_deletes(session_factory, world, make_coupon, grant_points, feed) -> None:
    coupon_id = await make_coupon(world.organization_id, points_cost=15)
    await grant_points(world.customer_id, world.organization_id, 15)
    issued = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))
    assert await balance(session_factory, world.customer_id, world.organization_id) == 0

    async with feed.subscribe(world.customer_id, usage_id=issued.usage_id) as subscription:
        async with session_factory() as session:
            owner = await session.get(User, world.customer_id)
            result = await RedemptionService(session, feed=feed).cancel_pending(owner, issued.usage_id)
        event = subscription.get_nowait()

    assert result.ok
    assert result.points_spent == 15
    assert event.change is UsageChangeType.DELETED
    assert await usage_rows(session_factory, coupon_id) == []
    assert await balance(session_factory, world.customer_id, world.organization_id) == 15


@pytest.mark.asyncio
async def test_cancel_refuses_foreign_and_finalized_usages(session_factory, world, make_coupon) -> None:
    coupon_id = await make_coupon(world.organization_id)
    issued = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))

    async with session_factory() as session:
        stranger = await session.get(User, world.agent_id)
        foreign = await RedemptionService(session).cancel_pending(stranger, issued.usage_id)
    assert foreign.error is RedemptionErrorKind.NOT_FOUND

    await finalize(session_factory, "482913", world.scope(), now=T0 + timedelta(seconds=3))
    async with session_factory() as session:
        owner = await session.get(User, world.customer_id)
        used = await RedemptionService(session).cancel_pending(owner, issued.usage_id)
    assert used.error is RedemptionErrorKind.ALREADY_REDEEMED
    assert len(await usage_rows(session_factory, coupon_id)) == 1


@pytest.mark.asyncio
async def test_sweep_releases_only_expired_pending_usages(
    session_factory, world, make_coupon, grant_points
) -> None:
    stale_coupon = await make_coupon(world.organization_id, title="Stale", points_cost=10)
    fresh_coupon = await make_coupon(world.organization_id, title="Fresh")
    await grant_points(world.customer_id, world.organization_id, 10)
    await initiate(session_factory, world.customer_id, stale_coupon, code_generator=fixed_code("101010"))
    await initiate(
        session_factory,
        world.customer_id,
        fresh_coupon,
        now=T0 + timedelta(seconds=200),
        code_generator=fixed_code("202020"),
    )

    async with session_factory() as session:
        result = await RedemptionService(session).sweep_expired_pending(
            now=T0 + timedelta(seconds=205), grace_seconds=30
        )
    assert result.released == 0

    async with session_factory() as session:
        result = await RedemptionService(session).sweep_expired_pending(
            now=T0 + timedelta(seconds=250), grace_seconds=30
        )

    assert result.released == 1
    assert result.refunded_points == 10
    assert await usage_rows(session_factory, stale_coupon) == []
    assert len(await usage_rows(session_factory, fresh_coupon)) == 1
    assert await balance(session_factory, world.customer_id, world.organization_id) == 10
    assert get_redemption_store().snapshot().sweeps["released"] == 1


@pytest.mark.asyncio
async def test_usage_status_and_listing(session_factory, world, make_coupon) -> None:
    active_coupon = await make_coupon(world.organization_id, title="Active")
    expired_coupon = await make_coupon(world.organization_id, title="Expired")
    await initiate(
        session_factory,
        world.customer_id,
        expired_coupon,
        now=T0 - timedelta(minutes=10),
        code_generator=fixed_code("909090"),
    )
    issued = await initiate(session_factory, world.customer_id, active_coupon, code_generator=fixed_code("808080"))
    now = T0 + timedelta(seconds=40)

    async with session_factory() as session:
        customer = await session.get(User, world.customer_id)
        service = RedemptionService(session)
        status = await service.usage_status(customer, active_coupon, now=now)
        lapsed = await service.usage_status(customer, expired_coupon, now=now)
        views = await service.list_user_usages(world.customer_id, now=now)
        org_views = await service.list_organization_usages(world.organization_id, now=now)

    assert status.pending is True
    assert status.pending_usage_id == issued.usage_id
    assert status.remaining_seconds == 140
    assert lapsed.pending is False
    assert [view.status for view in views] == [UsageDisplayStatus.ACTIVE, UsageDisplayStatus.EXPIRED]
    assert views[0].coupon_title == "Active"
    assert len(org_views) == 2


@pytest.mark.asyncio
async def test_concurrent_finalization_has_exactly_one_winner(locking_session_factory, race_world) -> None:
    factory = locking_session_factory
    async with factory() as session:
        coupon = Coupon(organization_id=race_world.organization_id, title="Race", points_reward=25)
        session.add(coupon)
        await session.commit()
        coupon_id = coupon.id

    issued = await initiate(factory, race_world.customer_id, coupon_id, code_generator=fixed_code("482913"))
    assert issued.ok

    moment = T0 + timedelta(seconds=45)
    results = await asyncio.gather(
        finalize(factory, "482913", race_world.scope(), now=moment),
        finalize(factory, "482913", race_world.scope(), now=moment),
    )

    errors = sorted((result.error.value if result.error else "ok") for result in results)
    assert errors == ["already_redeemed", "ok"]
    assert await balance(factory, race_world.customer_id, race_world.organization_id) == 25

    async with factory() as session:
        rewards = await session.scalar(
            select(func.count(LoyaltyPointTransaction.id)).where(
                LoyaltyPointTransaction.reason == LoyaltyPointReason.COUPON_REWARD
            )
        )
    assert rewards == 1


@pytest.mark.asyncio
async def test_points_are_conserved_across_repeated_redemptions(
    session_factory, world, make_coupon, grant_points
) -> None:
    coupon_id = await make_coupon(
        world.organization_id, is_code_required=False, points_cost=50, max_uses_per_user=0
    )
    await grant_points(world.customer_id, world.organization_id, 50)

    first = await initiate(session_factory, world.customer_id, coupon_id)
    assert first.ok
    assert await balance(session_factory, world.customer_id, world.organization_id) == 0

    second = await initiate(session_factory, world.customer_id, coupon_id, now=T0 + timedelta(seconds=5))
    assert second.error is RedemptionErrorKind.INSUFFICIENT_POINTS
    assert await balance(session_factory, world.customer_id, world.organization_id) == 0
    assert len(await usage_rows(session_factory, coupon_id)) == 1


@pytest.mark.asyncio
async def test_cancel_after_concurrent_finalize_keeps_the_redemption(
    session_factory, world, make_coupon, grant_points
) -> None:
    coupon_id = await make_coupon(world.organization_id, points_cost=50)
    await grant_points(world.customer_id, world.organization_id, 50)
    issued = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))

    async with session_factory() as session:
        owner = await session.get(User, world.customer_id)
        cached = await session.get(CouponUsage, issued.usage_id)
        assert cached.is_used is False
        # Rows loaded above stay cached in this session while staff finalize elsewhere.
        await session.commit()

        accepted = await finalize(session_factory, "482913", world.scope(), now=T0 + timedelta(seconds=10))
        assert accepted.ok

        cancelled = await RedemptionService(session).cancel_pending(
            owner, issued.usage_id, now=T0 + timedelta(seconds=11)
        )

    assert cancelled.error is RedemptionErrorKind.ALREADY_REDEEMED
    [usage] = await usage_rows(session_factory, coupon_id)
    assert usage.is_used is True
    assert await balance(session_factory, world.customer_id, world.organization_id) == 0

    async with session_factory() as session:
        refunds = await session.scalar(
            select(func.count(LoyaltyPointTransaction.id)).where(
                LoyaltyPointTransaction.reason == LoyaltyPointReason.COUPON_REFUND
            )
        )
    assert refunds == 0


def _insert_rival_before_write(monkeypatch, session_factory, **rival_fields):
    """Commit a competing pending row right after code allocation, before the insert."""

    allocate = RedemptionService._allocate_code
    rival: dict[str, object] = {}

    async def allocate_then_insert_rival(self, moment):
        code = await allocate(self, moment)
        if not rival:
            async with session_factory() as other:
                usage = CouponUsage(redeemed_at=moment, **rival_fields)
                other.add(usage)
                await other.commit()
                rival["id"] = usage.id
        return code

    monkeypatch.setattr(RedemptionService, "_allocate_code", allocate_then_insert_rival)
    return rival


@pytest.mark.asyncio
async def test_pending_insert_race_returns_the_winning_code(
    session_factory, world, make_coupon, monkeypatch
) -> None:
    coupon_id = await make_coupon(world.organization_id)
    rival = _insert_rival_before_write(
        monkeypatch,
        session_factory,
        user_id=world.customer_id,
        coupon_id=coupon_id,
        redemption_code="111111",
    )

    result = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("222222"))

    assert result.error is RedemptionErrorKind.ALREADY_PENDING
    assert result.usage_id == rival["id"]
    assert result.code == "111111"
    [usage] = await usage_rows(session_factory, coupon_id)
    assert usage.id == rival["id"]


@pytest.mark.asyncio
async def test_concurrently_taken_code_is_retried(session_factory, world, make_coupon, monkeypatch) -> None:
    coupon_id = await make_coupon(world.organization_id)
    _insert_rival_before_write(
        monkeypatch,
        session_factory,
        user_id=world.agent_id,
        coupon_id=coupon_id,
        redemption_code="333333",
    )

    result = await initiate(
        session_factory, world.customer_id, coupon_id, code_generator=code_sequence("333333", "444444")
    )

    assert result.ok
    assert result.code == "444444"
    codes = sorted(usage.redemption_code for usage in await usage_rows(session_factory, coupon_id))
    assert codes == ["333333", "444444"]


@pytest.mark.asyncio
async def test_store_failure_during_initiation_rolls_back(
    session_factory, world, make_coupon, grant_points, fail_writes
) -> None:
    coupon_id = await make_coupon(world.organization_id, points_cost=20)
    await grant_points(world.customer_id, world.organization_id, 50)
    fail_writes(Update, LoyaltyPointBalance)

    result = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))

    assert result.error is RedemptionErrorKind.TRANSIENT_STORE_ERROR
    assert await usage_rows(session_factory, coupon_id) == []
    assert await balance(session_factory, world.customer_id, world.organization_id) == 50
    assert get_redemption_store().snapshot().initiations["transient_store_error"] == 1


@pytest.mark.asyncio
async def test_store_failure_during_finalization_leaves_code_pending(
    session_factory, world, make_coupon, fail_writes
) -> None:
    coupon_id = await make_coupon(world.organization_id, points_reward=10)
    await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))
    fail_writes(Update, CouponUsage)

    result = await finalize(session_factory, "482913", world.scope(), now=T0 + timedelta(seconds=20))

    assert result.error is RedemptionErrorKind.TRANSIENT_STORE_ERROR
    [usage] = await usage_rows(session_factory, coupon_id)
    assert usage.is_used is False
    assert await balance(session_factory, world.customer_id, world.organization_id) == 0


@pytest.mark.asyncio
async def test_store_failure_during_cancel_keeps_usage_and_points(
    session_factory, world, make_coupon, grant_points, fail_writes
) -> None:
    coupon_id = await make_coupon(world.organization_id, points_cost=20)
    await grant_points(world.customer_id, world.organization_id, 20)
    issued = await initiate(session_factory, world.customer_id, coupon_id, code_generator=fixed_code("482913"))
    fail_writes(Delete, CouponUsage)

    async with session_factory() as session:
        owner = await session.get(User, world.customer_id)
        result = await RedemptionService(session).cancel_pending(owner, issued.usage_id)

    assert result.error is RedemptionErrorKind.TRANSIENT_STORE_ERROR
    [usage] = await usage_rows(session_factory, coupon_id)
    assert usage.id == issued.usage_id
    assert await balance(session_factory, world.customer_id, world.organization_id) == 0
