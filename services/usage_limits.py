"""
Static usage limit configuration.

Limits are monthly allowances per (category, tier). A None entry means the
category is unlimited for that tier. Guests get a fixed ceiling per category
that never rolls over.
"""
from enum import Enum
from typing import Dict, Optional, Union
from datetime import datetime, timezone


class UsageCategory(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"


USAGE_CATEGORIES = (UsageCategory.BASIC, UsageCategory.PREMIUM)

# Monthly allowance per category and tier (None = unlimited)
USAGE_LIMITS: Dict[UsageCategory, Dict[SubscriptionTier, Optional[int]]] = {
    UsageCategory.BASIC: {
        SubscriptionTier.FREE: 1500,
        SubscriptionTier.PLUS: 3000,
        SubscriptionTier.PRO: 10000,
    },
    UsageCategory.PREMIUM: {
        SubscriptionTier.FREE: 50,
        SubscriptionTier.PLUS: 250,
        SubscriptionTier.PRO: 500,
    },
}

# Lifetime ceiling for anonymous callers
GUEST_USAGE_LIMITS: Dict[UsageCategory, int] = {
    UsageCategory.BASIC: 20,
    UsageCategory.PREMIUM: 0,
}

# billing table counter incremented for each overage unit
MAX_MODE_USAGE_COLUMNS: Dict[UsageCategory, str] = {
    UsageCategory.BASIC: "max_mode_usage_basic",
    UsageCategory.PREMIUM: "max_mode_usage_premium",
}


def parse_category(value: Union[str, UsageCategory, None]) -> UsageCategory:
    """
    Parse a category value from a request.

    Raises:
        ValueError: If the value is not a known category
    """
    if isinstance(value, UsageCategory):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Invalid usage category: {value!r}")
    try:
        return UsageCategory(value.strip().lower())
    except ValueError:
        raise ValueError(f"Invalid usage category: {value!r}")


def get_usage_limit(category: UsageCategory, tier: SubscriptionTier, is_anonymous: bool = False) -> Optional[int]:
    """Return the allowance for a category, or None when unlimited."""
    if is_anonymous:
        return GUEST_USAGE_LIMITS[category]
    return USAGE_LIMITS[category][tier]


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from the store as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_next_month(now: datetime) -> datetime:
    """First instant of the calendar month after `now` (UTC)."""
    now = ensure_utc(now)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
