import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from noxly_api.services.redemption.expiry import (
    CountdownState,
    RedemptionMonitor,
    UsageDisplayStatus,
    as_utc,
    display_status,
    expiry_deadline,
    is_expired,
    remaining_seconds,
)
from noxly_api.services.redemption.feed import UsageChangeEvent, UsageChangeType


ISSUED_AT = datetime(2026, 10, 18, 21, 0, 0, tzinfo=timezone.utc)


def test_window_boundary_is_inclusive() -> None:
    assert not is_expired(ISSUED_AT, ISSUED_AT + timedelta(seconds=179), 180)
    assert not is_expired(ISSUED_AT, ISSUED_AT + timedelta(seconds=180), 180)
    assert is_expired(ISSUED_AT, ISSUED_AT + timedelta(seconds=181), 180)


def test_remaining_seconds_rounds_up_and_clamps() -> None:
    assert remaining_seconds(ISSUED_AT, ISSUED_AT, 180) == 180
    assert remaining_seconds(ISSUED_AT, ISSUED_AT + timedelta(seconds=0.4), 180) == 180
    assert remaining_seconds(ISSUED_AT, ISSUED_AT + timedelta(seconds=179.5), 180) == 1
    assert remaining_seconds(ISSUED_AT, ISSUED_AT + timedelta(minutes=10), 180) == 0


def test_naive_database_timestamps_are_treated_as_utc() -> None:
    naive = ISSUED_AT.replace(tzinfo=None)
    assert as_utc(naive) == ISSUED_AT
    assert expiry_deadline(naive, 180) == ISSUED_AT + timedelta(seconds=180)
    assert remaining_seconds(naive, ISSUED_AT + timedelta(seconds=60), 180) == 120


def test_display_status() -> None:
    later = ISSUED_AT + timedelta(seconds=200)
    assert display_status(True, ISSUED_AT, later, 180) is UsageDisplayStatus.USED
    assert display_status(False, ISSUED_AT, later, 180) is UsageDisplayStatus.EXPIRED
    assert display_status(False, ISSUED_AT, ISSUED_AT, 180) is UsageDisplayStatus.ACTIVE


class _Clock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


async def _collect(monitor: RedemptionMonitor, timeout: float = 2.0):
    frames = []

    async def _drain():
        async for frame in monitor.frames():
            frames.append(frame)

    await asyncio.wait_for(_drain(), timeout=timeout)
    return frames


@pytest.mark.asyncio
async def test_monitor_expires_and_requests_cleanup_once(feed) -> None:
    usage_id = uuid4()
    clock = _Clock(ISSUED_AT + timedelta(seconds=178))
    cleaned: list = []

    async def cleanup(target):
        cleaned.append(target)

    async with RedemptionMonitor(
        usage_id=usage_id,
        user_id=uuid4(),
        redeemed_at=ISSUED_AT,
        cleanup=cleanup,
        feed=feed,
        window_seconds=180,
        tick_seconds=0.01,
        clock=clock,
    ) as monitor:
        first = await asyncio.wait_for(monitor.frames().__anext__(), timeout=1)
        assert first.state is CountdownState.ACTIVE
        assert first.remaining_seconds == 2
        clock.moment = ISSUED_AT + timedelta(seconds=181)
        frames = await _collect(monitor)

    assert frames[-1].state is CountdownState.EXPIRED_CLIENT_SIDE
    assert frames[-1].remaining_seconds == 0
    assert monitor.state is CountdownState.EXPIRED_CLIENT_SIDE
    assert cleaned == [usage_id]
    assert feed.subscriber_count() == 0


@pytest.mark.asyncio
async def test_monitor_stops_when_finalized_elsewhere(feed) -> None:
    usage_id = uuid4()
    user_id = uuid4()
    cleaned: list = []

    async def cleanup(target):
        cleaned.append(target)

    monitor = RedemptionMonitor(
        usage_id=usage_id,
        user_id=user_id,
        redeemed_at=ISSUED_AT,
        cleanup=cleanup,
        feed=feed,
        window_seconds=180,
        tick_seconds=0.01,
        clock=_Clock(ISSUED_AT + timedelta(seconds=30)),
    )
    await monitor.start()
    assert feed.subscriber_count(user_id) == 1

    delivered = feed.publish(
        UsageChangeEvent(
            usage_id=usage_id,
            user_id=user_id,
            coupon_id=uuid4(),
            is_used=True,
            change=UsageChangeType.FINALIZED,
        )
    )
    assert delivered == 1

    frames = await _collect(monitor)
    await monitor.close()

    assert frames[-1].state is CountdownState.FINALIZED_EXTERNALLY
    assert all(frame.state is CountdownState.ACTIVE for frame in frames[:-1])
    assert cleaned == []
    assert feed.subscriber_count() == 0


@pytest.mark.asyncio
async def test_monitor_ignores_events_for_other_usages(feed) -> None:
    usage_id = uuid4()
    user_id = uuid4()

    monitor = RedemptionMonitor(
        usage_id=usage_id,
        user_id=user_id,
        redeemed_at=ISSUED_AT,
        feed=feed,
        window_seconds=180,
        tick_seconds=0.01,
        clock=_Clock(ISSUED_AT),
    )
    await monitor.start()
    delivered = feed.publish(
        UsageChangeEvent(
            usage_id=uuid4(),
            user_id=user_id,
            coupon_id=uuid4(),
            is_used=True,
            change=UsageChangeType.FINALIZED,
        )
    )
    await asyncio.sleep(0.05)

    assert delivered == 0
    assert monitor.state is CountdownState.ACTIVE
    await monitor.close()
    assert monitor.state is CountdownState.CANCELLED


@pytest.mark.asyncio
async def test_closing_active_monitor_cancels_and_cleans_up(feed) -> None:
    usage_id = uuid4()
    cleaned: list = []

    async def cleanup(target):
        cleaned.append(target)

    monitor = RedemptionMonitor(
        usage_id=usage_id,
        user_id=uuid4(),
        redeemed_at=ISSUED_AT,
        cleanup=cleanup,
        feed=feed,
        window_seconds=180,
        tick_seconds=0.01,
        clock=_Clock(ISSUED_AT + timedelta(seconds=10)),
    )
    await monitor.start()
    await asyncio.sleep(0.03)
    await monitor.close()
    await monitor.close()

    assert monitor.state is CountdownState.CANCELLED
    assert cleaned == [usage_id]
    assert feed.subscriber_count() == 0


@pytest.mark.asyncio
async def test_deleted_event_cancels_without_cleanup(feed) -> None:
    usage_id = uuid4()
    user_id = uuid4()
    cleaned: list = []

    async def cleanup(target):
        cleaned.append(target)

    monitor = RedemptionMonitor(
        usage_id=usage_id,
        user_id=user_id,
        redeemed_at=ISSUED_AT,
        cleanup=cleanup,
        feed=feed,
        window_seconds=180,
        tick_seconds=0.01,
        clock=_Clock(ISSUED_AT),
    )
    await monitor.start()
    feed.publish(
        UsageChangeEvent(
            usage_id=usage_id,
            user_id=user_id,
            coupon_id=uuid4(),
            is_used=False,
            change=UsageChangeType.DELETED,
        )
    )
    frames = await _collect(monitor)
    await monitor.close()

    assert frames[-1].state is CountdownState.CANCELLED
    assert cleaned == []


@pytest.mark.asyncio
async def test_cleanup_failure_is_logged_not_raised(feed) -> None:
    async def cleanup(target):
        raise RuntimeError("store offline")

    monitor = RedemptionMonitor(
        usage_id=uuid4(),
        user_id=uuid4(),
        redeemed_at=ISSUED_AT,
        cleanup=cleanup,
        feed=feed,
        window_seconds=180,
        tick_seconds=0.01,
        clock=_Clock(ISSUED_AT + timedelta(seconds=500)),
    )
    await monitor.start()
    frames = await _collect(monitor)
    await monitor.close()

    assert [frame.state for frame in frames] == [CountdownState.EXPIRED_CLIENT_SIDE]
    assert monitor.cleanup_requested is True
