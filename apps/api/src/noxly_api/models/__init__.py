"""SQLAlchemy models package."""

from .user import User, UserRoleEnum  # noqa: F401
from .organization import MemberRole, MemberStatus, Organization, OrganizationMember  # noqa: F401
from .coupon import Coupon  # noqa: F401
from .coupon_usage import CouponUsage  # noqa: F401
from .loyalty import (  # noqa: F401
    LoyaltyPointBalance,
    LoyaltyPointReason,
    LoyaltyPointTransaction,
)
from .challenge import Challenge, ChallengeConditionType, UserChallenge  # noqa: F401
