"""
SQLAlchemy models for persistence.
"""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Index, UniqueConstraint, CheckConstraint, text
from datetime import datetime, timezone
import uuid
from db import Base


def _utcnow():
    return datetime.now(timezone.utc)


class Billing(Base):
    """
    Subscription and Max Mode state for a user.

    Written by the subscription lifecycle (checkout, webhooks). The metering
    engine only reads plan/status/period and increments the Max Mode counters.
    """
    __tablename__ = "billing"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False)
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    plan_id = Column(String, nullable=True)  # e.g. "plus_monthly", "pro_yearly"
    price_id = Column(String, nullable=True)
    status = Column(String, nullable=True, default="inactive", server_default="inactive")  # Stripe subscription status
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    # Max Mode (usage-based overage billing for Pro plans)
    max_mode_enabled = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    max_mode_usage_basic = Column(Integer, nullable=False, default=0, server_default="0")
    max_mode_usage_premium = Column(Integer, nullable=False, default=0, server_default="0")
    max_mode_period_start = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    __table_args__ = (
        # One personal billing record per user
        UniqueConstraint('user_id', name='uq_billing_user_id'),
        Index('idx_billing_stripe_customer_id', 'stripe_customer_id'),
        Index('idx_billing_stripe_subscription_id', 'stripe_subscription_id'),
        CheckConstraint('max_mode_usage_basic >= 0', name='ck_billing_max_mode_usage_basic_non_negative'),
        CheckConstraint('max_mode_usage_premium >= 0', name='ck_billing_max_mode_usage_premium_non_negative'),
    )


class UsageQuota(Base):
    """
    Usage counter for one (user, category) pair in the current period.

    period_end is NULL for guest (anonymous) rows, which never roll over.
    """
    __tablename__ = "usage_quota"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False)
    category = Column(String, nullable=False)  # "basic" | "premium"
    plan_tier = Column(String, nullable=False)  # "free" | "plus" | "pro" snapshot at last write
    limit_amount = Column(Integer, nullable=True)  # NULL = unlimited
    used = Column(Integer, nullable=False, default=0, server_default="0")
    period_start = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    period_end = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    __table_args__ = (
        # Required by the atomic ON CONFLICT upsert in services/usage.py
        UniqueConstraint('user_id', 'category', name='uq_usage_quota_user_category'),
        CheckConstraint('used >= 0', name='ck_usage_quota_used_non_negative'),
        Index('idx_usage_quota_period_end', 'period_end'),
    )
