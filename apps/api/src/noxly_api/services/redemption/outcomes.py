"""Result types returned by the redemption and reward-claim flows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID


class RedemptionErrorKind(str, Enum):
    """Distinguishable failure outcomes surfaced to callers."""

    UNAUTHORIZED = "unauthorized"
    COUPON_UNAVAILABLE = "coupon_unavailable"
    ALREADY_PENDING = "already_pending"
    LIMIT_REACHED = "limit_reached"
    INSUFFICIENT_POINTS = "insufficient_points"
    CODE_GENERATION_FAILED = "code_generation_failed"
    INVALID_CODE = "invalid_code"
    WRONG_ORGANIZATION = "wrong_organization"
    ALREADY_REDEEMED = "already_redeemed"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    TRANSIENT_STORE_ERROR = "transient_store_error"


class ClaimErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    NOT_COMPLETED = "not_completed"
    ALREADY_CLAIMED = "already_claimed"
    TRANSIENT_STORE_ERROR = "transient_store_error"


ERROR_MESSAGES: dict[str, str] = {
    RedemptionErrorKind.UNAUTHORIZED.value: "Sign in to redeem coupons.",
    RedemptionErrorKind.COUPON_UNAVAILABLE.value: "This coupon is not available for redemption.",
    RedemptionErrorKind.ALREADY_PENDING.value: "You already generated a code for this coupon, use it first.",
    RedemptionErrorKind.LIMIT_REACHED.value: "You reached the redemption limit for this coupon.",
    RedemptionErrorKind.INSUFFICIENT_POINTS.value: "Not enough loyalty points for this coupon.",
    RedemptionErrorKind.CODE_GENERATION_FAILED.value: "Could not allocate a redemption code, try again.",
    RedemptionErrorKind.INVALID_CODE.value: "Invalid redemption code.",
    RedemptionErrorKind.WRONG_ORGANIZATION.value: "This code belongs to another organization.",
    RedemptionErrorKind.ALREADY_REDEEMED.value: "This coupon has already been redeemed.",
    RedemptionErrorKind.EXPIRED.value: "The redemption code has expired.",
    RedemptionErrorKind.NOT_FOUND.value: "Redemption not found.",
    RedemptionErrorKind.TRANSIENT_STORE_ERROR.value: "Temporary storage failure, please retry.",
    ClaimErrorKind.CHALLENGE_NOT_FOUND.value: "Challenge not found.",
    ClaimErrorKind.NOT_COMPLETED.value: "The challenge is not completed yet.",
    ClaimErrorKind.ALREADY_CLAIMED.value: "The reward has already been claimed.",
}


def describe_error(kind: RedemptionErrorKind | ClaimErrorKind) -> str:
    return ERROR_MESSAGES.get(kind.value, kind.value)


@dataclass(frozen=True)
class RedemptionOutcome:
    """Outcome of initiate/finalize/cancel; ``error`` is None on success."""

    error: RedemptionErrorKind | None = None
    usage_id: UUID | None = None
    coupon_id: UUID | None = None
    user_id: UUID | None = None
    code: str | None = None
    redeemed_at: datetime | None = None
    expires_at: datetime | None = None
    is_used: bool = False
    points_spent: int = 0
    reward_points: int = 0
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, kind: RedemptionErrorKind, *, detail: str | None = None, **fields) -> "RedemptionOutcome":
        return cls(error=kind, detail=detail or describe_error(kind), **fields)


@dataclass(frozen=True)
class ClaimOutcome:
    error: ClaimErrorKind | None = None
    challenge_id: UUID | None = None
    reward_points: int = 0
    organization_id: UUID | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, kind: ClaimErrorKind, *, challenge_id: UUID | None = None) -> "ClaimOutcome":
        return cls(error=kind, challenge_id=challenge_id, detail=describe_error(kind))


@dataclass(frozen=True)
class UsageStatus:
    """Per-(user, coupon) redemption state for the consumer UI."""

    pending: bool
    used_count: int
    pending_usage_id: UUID | None = None
    pending_code: str | None = None
    remaining_seconds: int = 0
