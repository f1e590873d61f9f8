"""Challenge progress and reward services."""

from .conditions import (
    DifferentOrganizationsCondition,
    RedeemCountCondition,
    TotalPointsCondition,
    evaluate_condition,
    parse_condition,
    progress_percentage,
)
from .service import ChallengeProgressView, ChallengeService, validate_challenge_fields

__all__ = [
    "ChallengeProgressView",
    "ChallengeService",
    "DifferentOrganizationsCondition",
    "RedeemCountCondition",
    "TotalPointsCondition",
    "evaluate_condition",
    "parse_condition",
    "progress_percentage",
    "validate_challenge_fields",
]
