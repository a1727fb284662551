"""
Max Mode: pay-as-you-go overage for Pro subscribers.

When a Pro subscriber with Max Mode enabled exhausts a monthly allowance,
each further unit is counted in the billing table and mirrored to Stripe as a
meter event. The local increment is committed first and unconditionally; the
Stripe report is best effort.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import settings
from models import Billing
from services.atomic_writes import execute_atomic
from services.metering import MeterReporter, NoopMeterReporter, emit_meter_event
from services.plan_resolver import STATUS_ACTIVE, get_billing_record, is_pro_plan
from services.usage_limits import MAX_MODE_USAGE_COLUMNS, UsageCategory, ensure_utc

logger = logging.getLogger(__name__)

# Max Mode price per message in cents. Display metadata only: the amount
# actually charged is configured on the Stripe meter's price.
MAX_MODE_PRICING = {
    UsageCategory.BASIC: 1,  # $0.01 per basic message
    UsageCategory.PREMIUM: 5,  # $0.05 per premium message
}

# Error codes for enable/disable
BILLING_RECORD_MISSING = "BILLING_RECORD_MISSING"
MAX_MODE_NOT_ELIGIBLE = "MAX_MODE_NOT_ELIGIBLE"
SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"


@dataclass(frozen=True)
class MaxModeStatus:
    eligible: bool
    enabled: bool
    usage_basic: int
    usage_premium: int
    period_start: Optional[datetime]
    estimated_cost_cents: int

    def to_dict(self):
        return {
            "eligible": self.eligible,
            "enabled": self.enabled,
            "usage_basic": self.usage_basic,
            "usage_premium": self.usage_premium,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "estimated_cost_cents": self.estimated_cost_cents,
        }


def is_max_mode_eligible(plan_id: Optional[str]) -> bool:
    """Max Mode is only offered on Pro-family plans."""
    return is_pro_plan(plan_id)


def meter_event_name(category: UsageCategory) -> str:
    return f"{settings.max_mode_meter_event_prefix}{category.value}"


def estimate_max_mode_cost_cents(usage_basic: int, usage_premium: int) -> int:
    return (
        usage_basic * MAX_MODE_PRICING[UsageCategory.BASIC]
        + usage_premium * MAX_MODE_PRICING[UsageCategory.PREMIUM]
    )


def get_max_mode_status(db: Session, user_id: str) -> MaxModeStatus:
    """
    Get Max Mode eligibility, toggle and overage counters for a user.

    Args:
        db: Database session
        user_id: Resolved user id

    Returns:
        MaxModeStatus (all zero/False when no billing row exists)
    """
    record = get_billing_record(db, user_id)
    if record is None:
        return MaxModeStatus(
            eligible=False,
            enabled=False,
            usage_basic=0,
            usage_premium=0,
            period_start=None,
            estimated_cost_cents=0,
        )

    eligible = is_max_mode_eligible(record.plan_id) and record.status == STATUS_ACTIVE
    usage_basic = record.max_mode_usage_basic or 0
    usage_premium = record.max_mode_usage_premium or 0

    return MaxModeStatus(
        eligible=eligible,
        enabled=eligible and bool(record.max_mode_enabled),
        usage_basic=usage_basic,
        usage_premium=usage_premium,
        period_start=ensure_utc(record.max_mode_period_start),
        estimated_cost_cents=estimate_max_mode_cost_cents(usage_basic, usage_premium),
    )


def enable_max_mode(db: Session, user_id: str, now: Optional[datetime] = None) -> Tuple[bool, Optional[str]]:
    """
    Turn Max Mode on for an active Pro subscriber.

    Enabling starts a new Max Mode period and resets both overage counters.
    Enabling when already enabled is a no-op.

    Returns:
        Tuple of (success: bool, error_code: Optional[str])
        - error_code: "BILLING_RECORD_MISSING", "MAX_MODE_NOT_ELIGIBLE", "SUBSCRIPTION_INACTIVE", or None
    """
    now = ensure_utc(now or datetime.now(timezone.utc))
    record = get_billing_record(db, user_id)

    if record is None:
        return False, BILLING_RECORD_MISSING
    if not is_max_mode_eligible(record.plan_id):
        return False, MAX_MODE_NOT_ELIGIBLE
    if record.status != STATUS_ACTIVE:
        return False, SUBSCRIPTION_INACTIVE
    if record.max_mode_enabled:
        return True, None

    try:
        record.max_mode_enabled = True
        record.max_mode_period_start = now
        record.max_mode_usage_basic = 0
        record.max_mode_usage_premium = 0
        db.commit()
        logger.info(f"MAX_MODE_ENABLED: user_id={user_id} plan_id={record.plan_id}")
        return True, None
    except Exception as e:
        db.rollback()
        logger.error(f"Error enabling Max Mode for user_id={user_id}: {str(e)}", exc_info=True)
        raise


def disable_max_mode(db: Session, user_id: str) -> Tuple[bool, Optional[str]]:
    """
    Turn Max Mode off. Counters are kept for reconciliation.

    Returns:
        Tuple of (success: bool, error_code: Optional[str])
    """
    record = get_billing_record(db, user_id)
    if record is None:
        return False, BILLING_RECORD_MISSING
    if not record.max_mode_enabled:
        return True, None

    try:
        record.max_mode_enabled = False
        db.commit()
        logger.info(f"MAX_MODE_DISABLED: user_id={user_id}")
        return True, None
    except Exception as e:
        db.rollback()
        logger.error(f"Error disabling Max Mode for user_id={user_id}: {str(e)}", exc_info=True)
        raise


def reset_max_mode_usage(db: Session, user_id: str, now: Optional[datetime] = None) -> bool:
    """
    Zero the overage counters and start a new Max Mode period.

    Returns:
        True if a billing row was reset, False if none exists
    """
    now = ensure_utc(now or datetime.now(timezone.utc))
    try:
        updated = (
            db.query(Billing)
            .filter(Billing.user_id == user_id)
            .update(
                {
                    Billing.max_mode_usage_basic: 0,
                    Billing.max_mode_usage_premium: 0,
                    Billing.max_mode_period_start: now,
                    Billing.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Error resetting Max Mode usage for user_id={user_id}: {str(e)}", exc_info=True)
        raise

    if updated:
        logger.info(f"MAX_MODE_USAGE_RESET: user_id={user_id}")
    return bool(updated)


def _max_mode_increment_statement(category: UsageCategory):
    # Column name comes from a fixed lookup table, never from input
    column = MAX_MODE_USAGE_COLUMNS[category]
    return text(f"""
        UPDATE billing
        SET {column} = {column} + 1
        WHERE user_id = :user_id
        RETURNING {column} AS new_usage, stripe_customer_id
    """)


def record_max_mode_usage(
    db: Session,
    user_id: str,
    category: UsageCategory,
    meter_reporter: Optional[MeterReporter] = None
) -> Tuple[bool, int]:
    """
    Record one Max Mode overage unit and report it to Stripe.

    The counter is incremented server-side (column = column + 1) and committed
    before the meter event is emitted. Meter failures are logged and never
    change the return value or the local counter.

    Args:
        db: Database session
        user_id: Resolved user id
        category: Usage category of the overage unit
        meter_reporter: Reporter for the metered-billing provider

    Returns:
        Tuple of (success: bool, new_usage: int)
        - success: False when the user has no billing row
    """
    if meter_reporter is None:
        meter_reporter = NoopMeterReporter()

    row = execute_atomic(
        db,
        _max_mode_increment_statement(category),
        {"user_id": user_id},
        description=f"max_mode_increment user_id={user_id} category={category.value}",
    )

    if row is None:
        logger.warning(f"MAX_MODE_USAGE: no billing row for user_id={user_id}, overage not recorded")
        return False, 0

    new_usage = row.new_usage
    logger.info(f"MAX_MODE_USAGE: user_id={user_id} category={category.value} new_usage={new_usage}")

    emit_meter_event(meter_reporter, meter_event_name(category), row.stripe_customer_id)

    return True, new_usage
