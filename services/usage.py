"""
Usage quota enforcement.

This module is the single entry point for consuming a unit of a priced
resource (basic or premium model call). It enforces monthly allowances per
plan tier, rolls periods over on calendar-month boundaries, and routes
consumption past the allowance into Max Mode overage for eligible users.

Concurrency: the check and the increment are one SQL statement
(INSERT ... ON CONFLICT (user_id, category) DO UPDATE ... WHERE used < limit
RETURNING used). Two concurrent requests for the same key can never both pass
the ceiling, and the period rollover is decided inside the same statement.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union
from sqlalchemy import Boolean, DateTime, Integer, bindparam, text
from sqlalchemy.orm import Session

from config import settings
from models import UsageQuota
from services.atomic_writes import execute_atomic
from services.max_mode import record_max_mode_usage
from services.metering import MeterReporter
from services.plan_resolver import TierInfo, resolve_tier
from services.quota_state import UsageState, calculate_usage_state
from services.usage_limits import (
    USAGE_CATEGORIES,
    SubscriptionTier,
    UsageCategory,
    ensure_utc,
    parse_category,
)

logger = logging.getLogger(__name__)

USAGE_LIMIT_MESSAGE = "Usage limit reached for your plan."


class UsageLimitError(Exception):
    """
    Raised when a quota is exhausted and overage is not enabled.

    max_mode_available tells the caller to offer Max Mode instead of a hard stop.
    """

    def __init__(
        self,
        message: str = USAGE_LIMIT_MESSAGE,
        max_mode_available: bool = False,
        category: Optional[UsageCategory] = None,
        limit: Optional[int] = None
    ):
        super().__init__(message)
        self.message = message
        self.max_mode_available = max_mode_available
        self.category = category
        self.limit = limit


@dataclass(frozen=True)
class ConsumeResult:
    tier: SubscriptionTier
    limit: Optional[int]
    remaining: Optional[int]
    used_max_mode: bool

    def to_dict(self):
        return {
            "tier": self.tier.value,
            "limit": self.limit,
            "remaining": self.remaining,
            "used_max_mode": self.used_max_mode,
        }


@dataclass(frozen=True)
class UsageSnapshot:
    category: UsageCategory
    limit: Optional[int]
    used: int
    remaining: Optional[int]
    period_start: datetime
    period_end: Optional[datetime]

    def to_dict(self):
        return {
            "category": self.category.value,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }


@dataclass(frozen=True)
class UsageSummary:
    tier: SubscriptionTier
    plan_id: Optional[str]
    status: Optional[str]
    period_end: Optional[datetime]
    usage: List[UsageSnapshot]
    max_mode_enabled: bool
    max_mode_eligible: bool

    def to_dict(self):
        return {
            "tier": self.tier.value,
            "plan_id": self.plan_id,
            "status": self.status,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "usage": [snapshot.to_dict() for snapshot in self.usage],
            "max_mode_enabled": self.max_mode_enabled,
            "max_mode_eligible": self.max_mode_eligible,
        }


# A row is rolled over when it belongs to an authenticated caller and its
# period has ended (or was never set).
_PERIOD_EXPIRED = "(:can_reset AND (usage_quota.period_end IS NULL OR usage_quota.period_end <= :now))"

_UPSERT_USAGE_SQL = f"""
    INSERT INTO usage_quota (
        id, user_id, category, plan_tier, limit_amount, used,
        period_start, period_end, created_at, updated_at
    ) VALUES (
        :id, :user_id, :category, :plan_tier, :limit_amount, 1,
        :now, :period_end, :now, :now
    )
    ON CONFLICT (user_id, category) DO UPDATE SET
        used = CASE WHEN {_PERIOD_EXPIRED} THEN 1 ELSE usage_quota.used + 1 END,
        period_start = CASE WHEN {_PERIOD_EXPIRED} THEN excluded.period_start ELSE usage_quota.period_start END,
        period_end = CASE WHEN {_PERIOD_EXPIRED} THEN excluded.period_end ELSE usage_quota.period_end END,
        plan_tier = excluded.plan_tier,
        limit_amount = excluded.limit_amount,
        updated_at = excluded.updated_at
    {{guard}}
    RETURNING used, period_start, period_end
"""


def _usage_upsert_statement(enforce_limit: bool):
    guard = f"WHERE {_PERIOD_EXPIRED} OR usage_quota.used < excluded.limit_amount" if enforce_limit else ""
    return (
        text(_UPSERT_USAGE_SQL.format(guard=guard))
        .bindparams(
            bindparam("now", type_=DateTime(timezone=True)),
            bindparam("period_end", type_=DateTime(timezone=True)),
            bindparam("can_reset", type_=Boolean()),
        )
        .columns(
            used=Integer(),
            period_start=DateTime(timezone=True),
            period_end=DateTime(timezone=True),
        )
    )


INCREMENT_WITH_CEILING = _usage_upsert_statement(enforce_limit=True)
INCREMENT_UNBOUNDED = _usage_upsert_statement(enforce_limit=False)


def increment_usage(
    db: Session,
    user_id: str,
    category: UsageCategory,
    state: UsageState,
    now: datetime,
    is_anonymous: bool = False,
    enforce_limit: bool = True
):
    """
    Atomically add one unit to a usage row, creating or rolling it over.

    Args:
        db: Database session
        user_id: Resolved user id
        category: Usage category
        state: Calculated state (supplies tier, limit and target period end)
        now: Current datetime (UTC)
        is_anonymous: Guest rows never roll over
        enforce_limit: When True the increment only applies while used < limit

    Returns:
        Row with used/period_start/period_end after the increment, or None
        when enforce_limit is True and the ceiling was already reached
    """
    statement = INCREMENT_WITH_CEILING if enforce_limit else INCREMENT_UNBOUNDED
    return execute_atomic(
        db,
        statement,
        {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "category": category.value,
            "plan_tier": state.tier_info.tier.value,
            "limit_amount": state.limit,
            "now": now,
            "period_end": state.target_period_end,
            "can_reset": not is_anonymous,
        },
        description=f"usage_increment user_id={user_id} category={category.value}",
    )


def consume_usage(
    db: Session,
    user_id: str,
    category: Union[str, UsageCategory],
    now: Optional[datetime] = None,
    is_anonymous: bool = False,
    meter_reporter: Optional[MeterReporter] = None
) -> ConsumeResult:
    """
    Consume one unit of a category for a user.

    Callers must invoke this exactly once per consumed unit; it is not
    idempotent against duplicate calls.

    Args:
        db: Database session
        user_id: Resolved user id
        category: "basic" or "premium"
        now: Current datetime (defaults to now in UTC)
        is_anonymous: True for guest callers
        meter_reporter: Reporter for Max Mode overage events

    Returns:
        ConsumeResult with tier, limit, remaining and used_max_mode

    Raises:
        ValueError: If category is invalid
        UsageLimitError: If the allowance is exhausted and Max Mode is not enabled
        UsagePersistenceError: If the write kept conflicting after retries
    """
    category = parse_category(category)
    now = ensure_utc(now or datetime.now(timezone.utc))

    state = calculate_usage_state(db, user_id, category, now, is_anonymous=is_anonymous)
    tier_info = state.tier_info
    limit = state.limit

    if limit is None:
        return ConsumeResult(tier=tier_info.tier, limit=None, remaining=None, used_max_mode=False)

    # Within a period `used` only grows, so an observed exhausted row stays exhausted
    is_limit_reached = limit <= 0 or (not state.should_reset and state.used >= limit)

    saved = None
    if not is_limit_reached:
        saved = increment_usage(db, user_id, category, state, now, is_anonymous=is_anonymous)
        is_limit_reached = saved is None

    if is_limit_reached:
        if tier_info.max_mode_enabled:
            record_max_mode_usage(db, user_id, category, meter_reporter)
            # Keep the regular counter truthful so the summary shows real consumption
            increment_usage(db, user_id, category, state, now, is_anonymous=is_anonymous, enforce_limit=False)
            return ConsumeResult(tier=tier_info.tier, limit=limit, remaining=0, used_max_mode=True)

        logger.info(
            f"USAGE_LIMIT_REACHED: user_id={user_id} category={category.value} "
            f"tier={tier_info.tier.value} limit={limit} max_mode_eligible={tier_info.max_mode_eligible}"
        )
        raise UsageLimitError(
            USAGE_LIMIT_MESSAGE,
            max_mode_available=tier_info.max_mode_eligible,
            category=category,
            limit=limit,
        )

    return ConsumeResult(
        tier=tier_info.tier,
        limit=limit,
        remaining=max(limit - saved.used, 0),
        used_max_mode=False,
    )


def get_usage_summary(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    is_anonymous: bool = False
) -> UsageSummary:
    """
    Read-only view of consumption vs. limits for every category.

    Uses the same state calculation as consume_usage(), so an expired period
    is reported as already rolled over even though nothing is written here.
    """
    now = ensure_utc(now or datetime.now(timezone.utc))
    tier_info: TierInfo = resolve_tier(db, user_id, now)

    records = {
        row.category: row
        for row in db.query(UsageQuota).filter(UsageQuota.user_id == user_id).all()
    }

    usage = []
    for category in USAGE_CATEGORIES:
        state = calculate_usage_state(
            db,
            user_id,
            category,
            now,
            is_anonymous=is_anonymous,
            existing_record=records.get(category.value),
            tier_info=tier_info,
        )
        remaining = None if state.limit is None else max(state.limit - state.used, 0)
        usage.append(UsageSnapshot(
            category=category,
            limit=state.limit,
            used=state.used,
            remaining=remaining,
            period_start=state.period_start,
            period_end=state.target_period_end,
        ))

    return UsageSummary(
        tier=tier_info.tier,
        plan_id=tier_info.plan_id,
        status=tier_info.status,
        period_end=tier_info.period_end,
        usage=usage,
        max_mode_enabled=tier_info.max_mode_enabled,
        max_mode_eligible=tier_info.max_mode_eligible,
    )


def purge_guest_usage(
    db: Session,
    now: Optional[datetime] = None,
    max_age_days: Optional[int] = None
) -> int:
    """
    Delete stale guest usage rows.

    Guest rows are the only rows without a period_end: bounded authenticated
    rows always carry one and unlimited categories are never written.

    Args:
        db: Database session
        now: Current datetime (defaults to now in UTC)
        max_age_days: Retention window (defaults to GUEST_USAGE_RETENTION_DAYS)

    Returns:
        Number of deleted rows
    """
    now = ensure_utc(now or datetime.now(timezone.utc))
    if max_age_days is None:
        max_age_days = settings.guest_usage_retention_days
    cutoff = now - timedelta(days=max_age_days)

    try:
        deleted = (
            db.query(UsageQuota)
            .filter(UsageQuota.period_end.is_(None), UsageQuota.updated_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info(f"Purged {deleted} guest usage rows last updated before {cutoff.isoformat()}")
        return deleted
    except Exception as e:
        db.rollback()
        logger.error(f"Error purging guest usage rows: {str(e)}", exc_info=True)
        raise
