"""In-process change feed for usage-ledger transitions, scoped per user."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, Set
from uuid import UUID

from loguru import logger

from noxly_api.core.settings import settings


class UsageChangeType(str, Enum):
    CREATED = "created"
    FINALIZED = "finalized"
    DELETED = "deleted"


@dataclass(frozen=True)
class UsageChangeEvent:
    usage_id: UUID
    user_id: UUID
    coupon_id: UUID
    is_used: bool
    change: UsageChangeType
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_payload(self) -> dict[str, object]:
        return {
            "usageId": str(self.usage_id),
            "couponId": str(self.coupon_id),
            "isUsed": self.is_used,
            "event": self.change.value,
            "occurredAt": self.occurred_at.isoformat(),
        }


class UsageSubscription:
    """A bounded queue of events for one subscriber."""

    def __init__(self, user_id: UUID, *, usage_id: UUID | None, maxsize: int) -> None:
        self.user_id = user_id
        self.usage_id = usage_id
        self._queue: asyncio.Queue[UsageChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, event: UsageChangeEvent) -> bool:
        if event.user_id != self.user_id:
            return False
        return self.usage_id is None or event.usage_id == self.usage_id

    def offer(self, event: UsageChangeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Usage change subscriber queue full; dropping event",
                user_id=str(self.user_id),
                usage_id=str(event.usage_id),
            )

    async def get(self) -> UsageChangeEvent:
        return await self._queue.get()

    def get_nowait(self) -> UsageChangeEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None


class UsageChangeFeed:
    """Fan usage transitions out to subscribers filtered by user (and optionally usage)."""

    def __init__(self, *, queue_size: int | None = None) -> None:
        self._queue_size = queue_size or settings.redemption_feed_queue_size
        self._subscribers: Dict[UUID, Set[UsageSubscription]] = defaultdict(set)

    @asynccontextmanager
    async def subscribe(
        self, user_id: UUID, *, usage_id: UUID | None = None
    ) -> AsyncIterator[UsageSubscription]:
        subscription = UsageSubscription(user_id, usage_id=usage_id, maxsize=self._queue_size)
        self._subscribers[user_id].add(subscription)
        logger.debug("Usage feed subscribed", user_id=str(user_id), usage_id=str(usage_id) if usage_id else None)
        try:
            yield subscription
        finally:
            bucket = self._subscribers.get(user_id)
            if bucket is not None:
                bucket.discard(subscription)
                if not bucket:
                    self._subscribers.pop(user_id, None)
            logger.debug("Usage feed unsubscribed", user_id=str(user_id))

    def publish(self, event: UsageChangeEvent) -> int:
        delivered = 0
        for subscription in list(self._subscribers.get(event.user_id, ())):
            if subscription.matches(event):
                subscription.offer(event)
                delivered += 1
        return delivered

    def subscriber_count(self, user_id: UUID | None = None) -> int:
        if user_id is not None:
            return len(self._subscribers.get(user_id, ()))
        return sum(len(bucket) for bucket in self._subscribers.values())


_FEED = UsageChangeFeed()


def get_usage_feed() -> UsageChangeFeed:
    return _FEED


__all__ = [
    "UsageChangeEvent",
    "UsageChangeFeed",
    "UsageChangeType",
    "UsageSubscription",
    "get_usage_feed",
]
