"""Challenge conditions parsed from their stored tag."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Sequence, Union
from uuid import UUID

from noxly_api.models.challenge import ChallengeConditionType


@dataclass(frozen=True)
class RedeemCountCondition:
    """Finalized redemptions, optionally limited to some organizations."""

    target: int
    organization_ids: tuple[UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DifferentOrganizationsCondition:
    """Distinct organizations the user has redeemed at."""

    target: int


@dataclass(frozen=True)
class TotalPointsCondition:
    """Current point balance, optionally limited to some organizations."""

    target: int
    organization_ids: tuple[UUID, ...] = field(default_factory=tuple)


ChallengeCondition = Union[RedeemCountCondition, DifferentOrganizationsCondition, TotalPointsCondition]


@dataclass(frozen=True)
class RedemptionFacts:
    """What a user has done, as seen by condition evaluation."""

    finalized_by_organization: dict[UUID, int]
    point_balances: dict[UUID, int]


def _coerce_ids(values: Iterable[object] | None) -> tuple[UUID, ...]:
    ids: list[UUID] = []
    for value in values or ():
        ids.append(value if isinstance(value, UUID) else UUID(str(value)))
    return tuple(ids)


def parse_condition(
    condition_type: str | ChallengeConditionType,
    condition_value: int,
    organization_ids: Sequence[object] | None = None,
) -> ChallengeCondition:
    try:
        tag = ChallengeConditionType(condition_type)
    except ValueError as exc:
        raise ValueError(f"Unknown challenge condition type: {condition_type}") from exc

    target = int(condition_value)
    match tag:
        case ChallengeConditionType.REDEEM_COUNT:
            return RedeemCountCondition(target=target, organization_ids=_coerce_ids(organization_ids))
        case ChallengeConditionType.DIFFERENT_ORGANIZATIONS:
            return DifferentOrganizationsCondition(target=target)
        case ChallengeConditionType.TOTAL_POINTS:
            return TotalPointsCondition(target=target, organization_ids=_coerce_ids(organization_ids))
    raise ValueError(f"Unknown challenge condition type: {condition_type}")


def _sum_for(values: dict[UUID, int], organization_ids: tuple[UUID, ...]) -> int:
    if not organization_ids:
        return sum(values.values())
    return sum(values.get(org_id, 0) for org_id in organization_ids)


def evaluate_condition(condition: ChallengeCondition, facts: RedemptionFacts) -> int:
    """Return the raw progress value for ``condition``."""

    match condition:
        case RedeemCountCondition(organization_ids=organization_ids):
            return _sum_for(facts.finalized_by_organization, organization_ids)
        case DifferentOrganizationsCondition():
            return sum(1 for count in facts.finalized_by_organization.values() if count > 0)
        case TotalPointsCondition(organization_ids=organization_ids):
            return _sum_for(facts.point_balances, organization_ids)
    raise TypeError(f"Unsupported challenge condition: {condition!r}")


def progress_percentage(progress: int, target: int) -> int:
    if target <= 0:
        return 0
    return min(100, math.floor(progress / target * 100))


__all__ = [
    "ChallengeCondition",
    "DifferentOrganizationsCondition",
    "RedeemCountCondition",
    "RedemptionFacts",
    "TotalPointsCondition",
    "evaluate_condition",
    "parse_condition",
    "progress_percentage",
]
