"""Translate service error kinds into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException, status

from noxly_api.services.redemption.outcomes import (
    ClaimErrorKind,
    RedemptionErrorKind,
    describe_error,
)

STATUS_BY_ERROR: dict[str, int] = {
    "unauthorized": status.HTTP_401_UNAUTHORIZED,
    "wrong_organization": status.HTTP_403_FORBIDDEN,
    "invalid_code": status.HTTP_404_NOT_FOUND,
    "not_found": status.HTTP_404_NOT_FOUND,
    "coupon_unavailable": status.HTTP_404_NOT_FOUND,
    "challenge_not_found": status.HTTP_404_NOT_FOUND,
    "already_pending": status.HTTP_409_CONFLICT,
    "already_redeemed": status.HTTP_409_CONFLICT,
    "limit_reached": status.HTTP_409_CONFLICT,
    "insufficient_points": status.HTTP_409_CONFLICT,
    "already_claimed": status.HTTP_409_CONFLICT,
    "not_completed": status.HTTP_409_CONFLICT,
    "expired": status.HTTP_410_GONE,
    "code_generation_failed": status.HTTP_503_SERVICE_UNAVAILABLE,
    "transient_store_error": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_exception(
    kind: RedemptionErrorKind | ClaimErrorKind, message: str | None = None, **extra: object
) -> HTTPException:
    detail: dict[str, object] = {"error": kind.value, "message": message or describe_error(kind)}
    detail.update({key: value for key, value in extra.items() if value is not None})
    return HTTPException(
        status_code=STATUS_BY_ERROR.get(kind.value, status.HTTP_400_BAD_REQUEST),
        detail=detail,
    )


def bad_request(error: ValueError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": "validation_error", "message": str(error)},
    )
