"""
Shared pytest fixtures.

Environment variables are set before any project module is imported:
config.Settings is built at import time and auth.jwt fails fast without a secret.
"""
import os

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-usage-metering")
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["METER_ASYNC"] = "false"
os.environ["USAGE_WRITE_ATTEMPTS"] = "3"

import pytest  # noqa: E402
from datetime import datetime, timezone  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import stripe  # noqa: E402

from db import Base  # noqa: E402
from models import Billing, UsageQuota  # noqa: E402


# Mid-month so "current period" rows end on 2026-04-01
FIXED_NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)
NEXT_PERIOD_END = datetime(2026, 4, 1, tzinfo=timezone.utc)


class RecordingMeterReporter:
    """Meter reporter that keeps every event in memory."""

    def __init__(self):
        self.events = []

    def report_usage_event(self, event_name, customer_id, quantity="1"):
        self.events.append((event_name, customer_id, quantity))


class FailingMeterReporter:
    """Meter reporter whose provider is always down."""

    def __init__(self):
        self.calls = 0

    def report_usage_event(self, event_name, customer_id, quantity="1"):
        self.calls += 1
        raise stripe.error.APIConnectionError("Could not connect to Stripe")


@pytest.fixture
def temp_db():
    """In-memory SQLite database with the full schema."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False)

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        engine.dispose()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def meter():
    return RecordingMeterReporter()


@pytest.fixture
def failing_meter():
    return FailingMeterReporter()


@pytest.fixture
def make_billing(temp_db):
    """Factory for billing rows."""
    def _make_billing(user_id, plan_id=None, status="active", **kwargs):
        record = Billing(user_id=user_id, plan_id=plan_id, status=status, **kwargs)
        temp_db.add(record)
        temp_db.commit()
        return record
    return _make_billing


@pytest.fixture
def make_usage(temp_db):
    """Factory for usage rows (defaults to the current period)."""
    def _make_usage(user_id, category, used, period_end=NEXT_PERIOD_END, period_start=None, **kwargs):
        record = UsageQuota(
            user_id=user_id,
            category=category,
            plan_tier=kwargs.pop("plan_tier", "free"),
            limit_amount=kwargs.pop("limit_amount", None),
            used=used,
            period_start=period_start or datetime(2026, 3, 1, tzinfo=timezone.utc),
            period_end=period_end,
            **kwargs
        )
        temp_db.add(record)
        temp_db.commit()
        return record
    return _make_usage


def get_usage_row(db, user_id, category):
    """Fresh read of a usage row."""
    db.expire_all()
    return (
        db.query(UsageQuota)
        .filter(UsageQuota.user_id == user_id, UsageQuota.category == category)
        .one_or_none()
    )


def get_billing_row(db, user_id):
    db.expire_all()
    return db.query(Billing).filter(Billing.user_id == user_id).one()
