"""Worker releasing pending usages abandoned past the validity window."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.core.settings import settings
from noxly_api.services.redemption.feed import UsageChangeFeed
from noxly_api.services.redemption.service import RedemptionService

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class PendingUsageSweepWorker:
    """Periodically deletes expired pending usages and refunds their cost."""

    # meta: worker: pending-usage-sweep

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        feed: UsageChangeFeed | None = None,
        interval_seconds: int | None = None,
        grace_seconds: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed
        self.interval_seconds = interval_seconds or settings.pending_sweep_interval_seconds
        self._grace_seconds = settings.pending_sweep_grace_seconds if grace_seconds is None else grace_seconds
        self._batch_size = batch_size or settings.pending_sweep_batch_size
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Pending usage sweep worker started",
            interval_seconds=self.interval_seconds,
            grace_seconds=self._grace_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Pending usage sweep worker stopped")

    async def run_once(self) -> Dict[str, int]:
        """Release one batch of expired pending usages."""

        session = await self._ensure_session()
        async with session as managed_session:
            service = RedemptionService(managed_session, feed=self._feed)
            result = await service.sweep_expired_pending(
                grace_seconds=self._grace_seconds,
                limit=self._batch_size,
            )
        summary = {"released": result.released, "refunded_points": result.refunded_points}
        if result.released:
            logger.info("Pending usage sweep completed", **summary)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Pending usage sweep iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["PendingUsageSweepWorker"]
