"""Validity window rules and the per-code countdown monitor.

The server-side rule (``is_expired``) is authoritative and checked again at
finalization. ``RedemptionMonitor`` drives the consumer countdown: it owns a
repeating tick task and a change-feed subscription and releases both when it
closes, whichever way the code ends.
"""

from __future__ import annotations

import asyncio
import math
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable
from uuid import UUID

from loguru import logger

from noxly_api.core.settings import settings
from noxly_api.services.redemption.feed import (
    UsageChangeFeed,
    UsageChangeType,
    UsageSubscription,
    get_usage_feed,
)


Clock = Callable[[], datetime]
CleanupCallback = Callable[[UUID], Awaitable[object]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize database datetimes (naive on SQLite) to aware UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _window(window_seconds: int | None) -> int:
    return settings.redemption_window_seconds if window_seconds is None else window_seconds


def elapsed_seconds(redeemed_at: datetime, now: datetime) -> float:
    return (as_utc(now) - as_utc(redeemed_at)).total_seconds()


def is_expired(redeemed_at: datetime, now: datetime, window_seconds: int | None = None) -> bool:
    return elapsed_seconds(redeemed_at, now) > _window(window_seconds)


def remaining_seconds(redeemed_at: datetime, now: datetime, window_seconds: int | None = None) -> int:
    remaining = _window(window_seconds) - elapsed_seconds(redeemed_at, now)
    return max(0, math.ceil(remaining))


def expiry_deadline(redeemed_at: datetime, window_seconds: int | None = None) -> datetime:
    return as_utc(redeemed_at) + timedelta(seconds=_window(window_seconds))


class UsageDisplayStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


def display_status(
    is_used: bool, redeemed_at: datetime, now: datetime, window_seconds: int | None = None
) -> UsageDisplayStatus:
    if is_used:
        return UsageDisplayStatus.USED
    if remaining_seconds(redeemed_at, now, window_seconds) <= 0:
        return UsageDisplayStatus.EXPIRED
    return UsageDisplayStatus.ACTIVE


class CountdownState(str, Enum):
    ACTIVE = "active"
    EXPIRED_CLIENT_SIDE = "expired"
    FINALIZED_EXTERNALLY = "finalized"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CountdownFrame:
    usage_id: UUID
    state: CountdownState
    remaining_seconds: int

    @property
    def is_terminal(self) -> bool:
        return self.state is not CountdownState.ACTIVE

    def as_payload(self) -> dict[str, object]:
        return {
            "usageId": str(self.usage_id),
            "state": self.state.value,
            "remainingSeconds": self.remaining_seconds,
        }


class RedemptionMonitor:
    """Countdown session for one pending code."""

    def __init__(
        self,
        *,
        usage_id: UUID,
        user_id: UUID,
        redeemed_at: datetime,
        cleanup: CleanupCallback | None = None,
        feed: UsageChangeFeed | None = None,
        window_seconds: int | None = None,
        tick_seconds: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.usage_id = usage_id
        self.user_id = user_id
        self.redeemed_at = as_utc(redeemed_at)
        self._cleanup = cleanup
        self._feed = feed or get_usage_feed()
        self._window_seconds = _window(window_seconds)
        self._tick_seconds = tick_seconds or settings.redemption_countdown_tick_seconds
        self._clock = clock or utcnow
        self._frames: asyncio.Queue[CountdownFrame] = asyncio.Queue()
        self._stack = AsyncExitStack()
        self._tasks: list[asyncio.Task] = []
        self.state = CountdownState.ACTIVE
        self.cleanup_requested = False

    async def __aenter__(self) -> "RedemptionMonitor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> None:
        subscription = await self._stack.enter_async_context(
            self._feed.subscribe(self.user_id, usage_id=self.usage_id)
        )
        self._tasks = [
            asyncio.create_task(self._countdown_loop()),
            asyncio.create_task(self._watch_feed(subscription)),
        ]

    def remaining(self) -> int:
        return remaining_seconds(self.redeemed_at, self._clock(), self._window_seconds)

    async def frames(self) -> AsyncIterator[CountdownFrame]:
        """Yield frames until the session reaches a terminal state."""

        while True:
            frame = await self._frames.get()
            yield frame
            if frame.is_terminal:
                return

    async def close(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

        if self._transition(CountdownState.CANCELLED):
            remaining = self.remaining()
            await self._request_cleanup()
            self._emit(CountdownState.CANCELLED, remaining)
        await self._stack.aclose()

    def _transition(self, state: CountdownState) -> bool:
        if self.state is not CountdownState.ACTIVE:
            return False
        self.state = state
        logger.debug("Redemption countdown ended", usage_id=str(self.usage_id), state=state.value)
        return True

    def _emit(self, state: CountdownState, remaining: int) -> None:
        self._frames.put_nowait(CountdownFrame(self.usage_id, state, remaining))

    async def _request_cleanup(self) -> None:
        if self._cleanup is None or self.cleanup_requested:
            return
        self.cleanup_requested = True
        try:
            await self._cleanup(self.usage_id)
        except Exception as exc:
            logger.exception("Pending usage cleanup failed", usage_id=str(self.usage_id), error=str(exc))

    async def _countdown_loop(self) -> None:
        while self.state is CountdownState.ACTIVE:
            remaining = self.remaining()
            if remaining <= 0:
                if self._transition(CountdownState.EXPIRED_CLIENT_SIDE):
                    # Terminal frame only after cleanup so readers never close mid-delete.
                    await self._request_cleanup()
                    self._emit(CountdownState.EXPIRED_CLIENT_SIDE, 0)
                return
            self._emit(CountdownState.ACTIVE, remaining)
            await asyncio.sleep(self._tick_seconds)

    async def _watch_feed(self, subscription: UsageSubscription) -> None:
        while self.state is CountdownState.ACTIVE:
            event = await subscription.get()
            if event.is_used or event.change is UsageChangeType.FINALIZED:
                if self._transition(CountdownState.FINALIZED_EXTERNALLY):
                    self._emit(CountdownState.FINALIZED_EXTERNALLY, 0)
                return
            if event.change is UsageChangeType.DELETED:
                # Row already gone (swept or cancelled elsewhere); nothing to clean up.
                self.cleanup_requested = True
                if self._transition(CountdownState.CANCELLED):
                    self._emit(CountdownState.CANCELLED, 0)
                return


__all__ = [
    "CountdownFrame",
    "CountdownState",
    "RedemptionMonitor",
    "UsageDisplayStatus",
    "as_utc",
    "display_status",
    "elapsed_seconds",
    "expiry_deadline",
    "is_expired",
    "remaining_seconds",
    "utcnow",
]
