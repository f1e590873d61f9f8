"""Per-organization loyalty point balances."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.models.loyalty import (
    LoyaltyPointBalance,
    LoyaltyPointReason,
    LoyaltyPointTransaction,
)
from noxly_api.models.organization import Organization


@dataclass
class PointBalanceView:
    """Serializable balance for one organization."""

    organization_id: UUID
    organization_name: str | None
    points: int


class LoyaltyPointsService:
    """Reads and mutates point balances; every mutation appends a transaction row.

    The service flushes but never commits, so balance changes share the
    caller's transaction with the usage-ledger write that caused them.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_balance(self, user_id: UUID, organization_id: UUID) -> int:
        stmt = select(LoyaltyPointBalance.points).where(
            LoyaltyPointBalance.user_id == user_id,
            LoyaltyPointBalance.organization_id == organization_id,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one_or_none() or 0)

    async def list_balances(self, user_id: UUID) -> list[PointBalanceView]:
        stmt = (
            select(LoyaltyPointBalance, Organization.name)
            .join(Organization, Organization.id == LoyaltyPointBalance.organization_id)
            .where(LoyaltyPointBalance.user_id == user_id)
            .order_by(Organization.name)
        )
        result = await self._db.execute(stmt)
        return [
            PointBalanceView(
                organization_id=balance.organization_id,
                organization_name=name,
                points=int(balance.points or 0),
            )
            for balance, name in result.all()
        ]

    async def total_points(self, user_id: UUID, organization_ids: Sequence[UUID] | None = None) -> int:
        """Sum of current balances, optionally restricted to some organizations."""

        stmt = select(func.coalesce(func.sum(LoyaltyPointBalance.points), 0)).where(
            LoyaltyPointBalance.user_id == user_id
        )
        if organization_ids:
            stmt = stmt.where(LoyaltyPointBalance.organization_id.in_(list(organization_ids)))
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def credit(
        self,
        user_id: UUID,
        organization_id: UUID,
        amount: int,
        *,
        reason: LoyaltyPointReason,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Add ``amount`` points and return the new balance."""

        if amount < 0:
            raise ValueError("Credit amount must be non-negative")
        if amount == 0:
            return await self.get_balance(user_id, organization_id)

        stmt = (
            update(LoyaltyPointBalance)
            .where(
                LoyaltyPointBalance.user_id == user_id,
                LoyaltyPointBalance.organization_id == organization_id,
            )
            .values(points=LoyaltyPointBalance.points + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            self._db.add(
                LoyaltyPointBalance(user_id=user_id, organization_id=organization_id, points=amount)
            )
            await self._db.flush()

        balance = await self.get_balance(user_id, organization_id)
        await self._record(user_id, organization_id, amount, balance, reason, reference_id, metadata)
        logger.info(
            "Credited loyalty points",
            user_id=str(user_id),
            organization_id=str(organization_id),
            amount=amount,
            reason=reason.value,
        )
        return balance

    async def try_debit(
        self,
        user_id: UUID,
        organization_id: UUID,
        amount: int,
        *,
        reason: LoyaltyPointReason = LoyaltyPointReason.COUPON_COST,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Subtract ``amount`` only if the balance covers it; never goes negative."""

        if amount < 0:
            raise ValueError("Debit amount must be non-negative")
        if amount == 0:
            return True

        stmt = (
            update(LoyaltyPointBalance)
            .where(
                LoyaltyPointBalance.user_id == user_id,
                LoyaltyPointBalance.organization_id == organization_id,
                LoyaltyPointBalance.points >= amount,
            )
            .values(points=LoyaltyPointBalance.points - amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            logger.info(
                "Loyalty debit rejected",
                user_id=str(user_id),
                organization_id=str(organization_id),
                amount=amount,
            )
            return False

        balance = await self.get_balance(user_id, organization_id)
        await self._record(user_id, organization_id, -amount, balance, reason, reference_id, metadata)
        logger.info(
            "Debited loyalty points",
            user_id=str(user_id),
            organization_id=str(organization_id),
            amount=amount,
            reason=reason.value,
        )
        return True

    async def list_transactions(self, user_id: UUID, *, limit: int = 50) -> list[LoyaltyPointTransaction]:
        stmt = (
            select(LoyaltyPointTransaction)
            .where(LoyaltyPointTransaction.user_id == user_id)
            .order_by(LoyaltyPointTransaction.occurred_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _record(
        self,
        user_id: UUID,
        organization_id: UUID,
        amount: int,
        balance_after: int,
        reason: LoyaltyPointReason,
        reference_id: str | None,
        metadata: dict[str, Any] | None,
    ) -> None:
        self._db.add(
            LoyaltyPointTransaction(
                user_id=user_id,
                organization_id=organization_id,
                amount=amount,
                balance_after=balance_after,
                reason=reason,
                reference_id=reference_id,
                metadata_json=metadata or {},
            )
        )
        await self._db.flush()
