"""
Quota state calculation shared by enforcement and the usage summary.

Both consume_usage() and get_usage_summary() go through
calculate_usage_state() so the numbers shown to users never diverge from
what is enforced.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session

from models import UsageQuota
from services.plan_resolver import TierInfo, resolve_tier
from services.usage_limits import UsageCategory, ensure_utc, get_usage_limit, start_of_next_month

# Marker for "caller did not load the usage row"; None means "no row exists"
NOT_LOADED = object()


@dataclass(frozen=True)
class UsageState:
    tier_info: TierInfo
    limit: Optional[int]
    current: Optional[UsageQuota]
    used: int
    period_start: datetime
    target_period_end: Optional[datetime]
    should_reset: bool


def get_usage_record(db: Session, user_id: str, category: UsageCategory) -> Optional[UsageQuota]:
    return (
        db.query(UsageQuota)
        .filter(UsageQuota.user_id == user_id, UsageQuota.category == category.value)
        .first()
    )


def resolve_period_end(now: datetime, is_anonymous: bool = False) -> Optional[datetime]:
    """
    Period end for a new or rolled-over usage row.

    All users roll over on the same calendar-month boundary (UTC). Guest rows
    have no period.
    """
    if is_anonymous:
        return None
    return start_of_next_month(now)


def calculate_usage_state(
    db: Session,
    user_id: str,
    category: UsageCategory,
    now: datetime,
    is_anonymous: bool = False,
    existing_record=NOT_LOADED,
    tier_info: Optional[TierInfo] = None
) -> UsageState:
    """
    Compute limit, rollover and usage-to-date for one category.

    Args:
        db: Database session
        user_id: Resolved user id
        category: Usage category
        now: Current datetime
        is_anonymous: True for guest callers (fixed ceiling, no rollover)
        existing_record: Preloaded UsageQuota row (or None if known absent);
            loaded from the database when omitted
        tier_info: Preresolved tier info; resolved when omitted

    Returns:
        UsageState describing the post-rollover view of the row
    """
    now = ensure_utc(now)
    if tier_info is None:
        tier_info = resolve_tier(db, user_id, now)

    limit = get_usage_limit(category, tier_info.tier, is_anonymous=is_anonymous)

    current = existing_record
    if current is NOT_LOADED:
        current = get_usage_record(db, user_id, category)

    target_period_end = resolve_period_end(now, is_anonymous=is_anonymous)
    current_used = current.used if current is not None else 0
    current_period_start = ensure_utc(current.period_start) if current is not None else None

    if limit is None:
        # Unlimited categories never roll over; the counter is informational
        return UsageState(
            tier_info=tier_info,
            limit=None,
            current=current,
            used=current_used,
            period_start=current_period_start or now,
            target_period_end=target_period_end,
            should_reset=False,
        )

    if current is None:
        should_reset = True
    elif is_anonymous:
        should_reset = False
    else:
        current_period_end = ensure_utc(current.period_end)
        should_reset = current_period_end is None or current_period_end <= now

    return UsageState(
        tier_info=tier_info,
        limit=limit,
        current=current,
        used=0 if should_reset else current_used,
        period_start=now if should_reset else (current_period_start or now),
        target_period_end=target_period_end,
        should_reset=should_reset,
    )
