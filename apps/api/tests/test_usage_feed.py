from uuid import uuid4

import pytest

from noxly_api.services.redemption.feed import UsageChangeEvent, UsageChangeFeed, UsageChangeType


def _event(user_id, usage_id=None, change=UsageChangeType.CREATED, is_used=False) -> UsageChangeEvent:
    return UsageChangeEvent(
        usage_id=usage_id or uuid4(),
        user_id=user_id,
        coupon_id=uuid4(),
        is_used=is_used,
        change=change,
    )


@pytest.mark.asyncio
async def test_events_are_scoped_to_the_subscribed_user(feed) -> None:
    alice, bob = uuid4(), uuid4()

    async with feed.subscribe(alice) as alice_sub, feed.subscribe(bob) as bob_sub:
        assert feed.publish(_event(alice)) == 1
        assert alice_sub.get_nowait() is not None
        assert bob_sub.get_nowait() is None

    assert feed.subscriber_count() == 0


@pytest.mark.asyncio
async def test_usage_filter_only_matches_that_usage(feed) -> None:
    user_id, usage_id = uuid4(), uuid4()

    async with feed.subscribe(user_id, usage_id=usage_id) as narrow, feed.subscribe(user_id) as wide:
        feed.publish(_event(user_id))
        feed.publish(_event(user_id, usage_id=usage_id, change=UsageChangeType.FINALIZED, is_used=True))

        received = narrow.get_nowait()
        assert received.usage_id == usage_id
        assert received.change is UsageChangeType.FINALIZED
        assert narrow.get_nowait() is None

        assert wide.get_nowait().change is UsageChangeType.CREATED
        assert wide.get_nowait().change is UsageChangeType.FINALIZED


@pytest.mark.asyncio
async def test_full_subscriber_queue_drops_instead_of_blocking() -> None:
    feed = UsageChangeFeed(queue_size=2)
    user_id = uuid4()

    async with feed.subscribe(user_id) as subscription:
        for _ in range(5):
            feed.publish(_event(user_id))
        assert subscription.dropped == 3


def test_event_payload_uses_api_field_names() -> None:
    event = _event(uuid4(), change=UsageChangeType.DELETED)
    payload = event.as_payload()
    assert payload["event"] == "deleted"
    assert payload["isUsed"] is False
    assert set(payload) == {"usageId", "couponId", "isUsed", "event", "occurredAt"}
