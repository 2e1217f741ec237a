"""
Subscription feature gates and the monthly AI extraction quota.

The gate table is static data keyed by feature then tier. Numeric limits
use math.inf for "unlimited". The quota check itself is pure: callers count
the user's qualifying attempts for the current month (see
Storage.count_extraction_attempts and month_window) and pass the number in.

The count-then-check is not transactional. Two concurrent requests from
the same user can both read used=49 and both proceed; a small overrun of
the cap is accepted.
"""

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Tuple, Union

logger = logging.getLogger(__name__)


class SubscriptionTier(Enum):
    FREE = "free"
    PRO = "pro"
    ELITE = "elite"

    @classmethod
    def from_string(cls, value: str) -> "SubscriptionTier":
        """Unknown or missing tiers read as FREE."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.FREE


FeatureLimit = Union[bool, int, float]

FEATURE_GATES: Dict[str, Dict[SubscriptionTier, FeatureLimit]] = {
    "max_active_deals": {
        SubscriptionTier.FREE: 3,
        SubscriptionTier.PRO: math.inf,
        SubscriptionTier.ELITE: math.inf,
    },
    "ai_extraction": {
        SubscriptionTier.FREE: False,
        SubscriptionTier.PRO: True,
        SubscriptionTier.ELITE: True,
    },
    "ai_monthly_credits": {
        SubscriptionTier.FREE: 0,
        SubscriptionTier.PRO: 50,
        SubscriptionTier.ELITE: math.inf,
    },
    "email_intake": {
        SubscriptionTier.FREE: False,
        SubscriptionTier.PRO: True,
        SubscriptionTier.ELITE: True,
    },
}


class FeatureNotAvailableError(Exception):
    """The user's tier does not include the feature."""

    code = "feature_not_available"

    def __init__(self, feature: str, tier: SubscriptionTier):
        self.feature = feature
        self.tier = tier
        self.message = "AI extraction requires a Pro or Elite subscription"
        super().__init__(self.message)


class QuotaExceededError(Exception):
    """The user has used every AI extraction credit for this month."""

    code = "limit_reached"

    def __init__(self, used: int, limit: int):
        self.used = used
        self.limit = limit
        self.message = (
            f"You've used {used}/{limit} AI extractions this month. "
            f"Upgrade to Elite for unlimited."
        )
        super().__init__(self.message)


def _tier(tier: Union[str, SubscriptionTier]) -> SubscriptionTier:
    if isinstance(tier, SubscriptionTier):
        return tier
    return SubscriptionTier.from_string(tier)


def get_feature_limit(tier: Union[str, SubscriptionTier], feature: str) -> FeatureLimit:
    """Raw gate value; raises KeyError for an unknown feature."""
    return FEATURE_GATES[feature][_tier(tier)]


def can_use_feature(tier: Union[str, SubscriptionTier], feature: str) -> bool:
    value = get_feature_limit(tier, feature)
    if isinstance(value, bool):
        return value
    return value > 0


def month_window(now: datetime) -> Tuple[datetime, datetime]:
    """[first instant of the month, first instant of next month) in UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def check_extraction_allowed(tier: Union[str, SubscriptionTier], used: int) -> None:
    """
    Gate an AI extraction request.

    Args:
        tier: The user's subscription tier
        used: Qualifying attempts already made this calendar month

    Raises:
        FeatureNotAvailableError: tier has no AI extraction
        QuotaExceededError: capped tier with used >= its monthly credits
    """
    tier = _tier(tier)
    if not can_use_feature(tier, "ai_extraction"):
        logger.info(f"AI extraction denied for tier {tier.value}")
        raise FeatureNotAvailableError("ai_extraction", tier)

    limit = get_feature_limit(tier, "ai_monthly_credits")
    if math.isinf(limit):
        return
    if used >= limit:
        logger.info(f"AI extraction quota reached: {used}/{int(limit)}")
        raise QuotaExceededError(used, int(limit))


def is_quota_capped(tier: Union[str, SubscriptionTier]) -> bool:
    """True when the tier has a finite monthly credit count worth querying."""
    limit = get_feature_limit(tier, "ai_monthly_credits")
    return not math.isinf(limit)
