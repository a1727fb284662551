"""
Plan tier resolution for usage enforcement.

Derives the caller's effective subscription tier from the billing table.
Tier info is computed fresh per request and never cached: subscription status
changes asynchronously (webhooks, cancellations).

Stripe statuses that keep paid limits:
- active, trialing, past_due, incomplete, unpaid, paid
- canceled, but only until current_period_end (grace period)

Everything else degrades to the free tier regardless of plan_id.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session

from models import Billing
from services.usage_limits import SubscriptionTier, ensure_utc, start_of_next_month

logger = logging.getLogger(__name__)

# Billing status constants (Stripe statuses)
STATUS_ACTIVE = "active"
STATUS_TRIALING = "trialing"
STATUS_PAST_DUE = "past_due"
STATUS_INCOMPLETE = "incomplete"
STATUS_UNPAID = "unpaid"
STATUS_PAID = "paid"
STATUS_CANCELED = "canceled"

# Statuses that retain paid quota
ACTIVE_BILLING_STATUSES = {
    STATUS_ACTIVE,
    STATUS_TRIALING,
    STATUS_PAST_DUE,
    STATUS_INCOMPLETE,
    STATUS_UNPAID,
    STATUS_PAID,
}

PRO_PLAN_PREFIX = "pro"


@dataclass(frozen=True)
class TierInfo:
    tier: SubscriptionTier
    plan_id: Optional[str]
    status: Optional[str]
    period_end: Optional[datetime]
    max_mode_enabled: bool
    max_mode_eligible: bool


def is_pro_plan(plan_id: Optional[str]) -> bool:
    return bool(plan_id) and plan_id.startswith(PRO_PLAN_PREFIX)


def get_billing_record(db: Session, user_id: str) -> Optional[Billing]:
    """Return the personal billing row for a user, or None."""
    return db.query(Billing).filter(Billing.user_id == user_id).first()


def _free_tier(now: datetime, plan_id: Optional[str] = None, status: Optional[str] = None) -> TierInfo:
    return TierInfo(
        tier=SubscriptionTier.FREE,
        plan_id=plan_id,
        status=status,
        period_end=start_of_next_month(now),
        max_mode_enabled=False,
        max_mode_eligible=False,
    )


def tier_info_from_billing(record: Optional[Billing], now: datetime) -> TierInfo:
    """
    Derive TierInfo from a billing row (or its absence).

    Args:
        record: Billing row, or None when the user never touched billing
        now: Current datetime (UTC)

    Returns:
        TierInfo for the current request
    """
    if record is None:
        return _free_tier(now)

    plan_id = record.plan_id
    status = record.status
    current_period_end = ensure_utc(record.current_period_end)

    has_active_status = bool(plan_id) and bool(status) and status in ACTIVE_BILLING_STATUSES
    in_grace_period = (
        status == STATUS_CANCELED
        and current_period_end is not None
        and current_period_end > now
    )

    if not has_active_status and not in_grace_period:
        return _free_tier(now, plan_id=plan_id, status=status)

    # Grace-period and past-due subscribers keep their paid quota but cannot
    # run up pay-as-you-go charges.
    max_mode_eligible = is_pro_plan(plan_id) and status == STATUS_ACTIVE

    return TierInfo(
        tier=SubscriptionTier.PRO if is_pro_plan(plan_id) else SubscriptionTier.PLUS,
        plan_id=plan_id,
        status=status,
        period_end=current_period_end,
        max_mode_enabled=max_mode_eligible and bool(record.max_mode_enabled),
        max_mode_eligible=max_mode_eligible,
    )


def resolve_tier(db: Session, user_id: str, now: datetime) -> TierInfo:
    """
    Resolve the effective subscription tier for a user.

    Args:
        db: Database session
        user_id: Resolved user id
        now: Current datetime

    Returns:
        TierInfo (free tier when no billing row exists)
    """
    now = ensure_utc(now)
    record = get_billing_record(db, user_id)
    if record is None:
        logger.debug(f"No billing record for user_id={user_id}, using free tier")
    return tier_info_from_billing(record, now)
