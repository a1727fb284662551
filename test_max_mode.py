"""
Tests for Max Mode overage: recording, metering and the enable/disable toggle.
"""
from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import OperationalError

from conftest import get_billing_row, get_usage_row
from services.max_mode import (
    BILLING_RECORD_MISSING,
    MAX_MODE_NOT_ELIGIBLE,
    MAX_MODE_PRICING,
    SUBSCRIPTION_INACTIVE,
    disable_max_mode,
    enable_max_mode,
    get_max_mode_status,
    meter_event_name,
    record_max_mode_usage,
    reset_max_mode_usage,
)
from services.usage import UsageLimitError, consume_usage
from services.usage_limits import SubscriptionTier, UsageCategory, ensure_utc


@pytest.fixture
def pro_user(make_billing):
    return make_billing(
        "user-pro",
        plan_id="pro_monthly",
        status="active",
        stripe_customer_id="cus_pro",
        max_mode_enabled=True,
    ).user_id


def test_pro_overage_records_and_meters(temp_db, now, pro_user, make_usage, meter):
    """Pro user at 500/500 premium with Max Mode on keeps going and is metered."""
    make_usage(pro_user, "premium", 500, plan_tier="pro", limit_amount=500)

    result = consume_usage(temp_db, pro_user, "premium", now=now, meter_reporter=meter)

    assert result.tier == SubscriptionTier.PRO
    assert result.limit == 500
    assert result.remaining == 0
    assert result.used_max_mode is True

    billing = get_billing_row(temp_db, pro_user)
    assert billing.max_mode_usage_premium == 1
    assert billing.max_mode_usage_basic == 0
    assert meter.events == [("max_mode_premium", "cus_pro", "1")]

    # The regular counter keeps counting past the allowance
    assert get_usage_row(temp_db, pro_user, "premium").used == 501


def test_last_included_unit_is_not_overage(temp_db, now, pro_user, make_usage, meter):
    make_usage(pro_user, "premium", 499, plan_tier="pro", limit_amount=500)

    result = consume_usage(temp_db, pro_user, "premium", now=now, meter_reporter=meter)

    assert result.used_max_mode is False
    assert result.remaining == 0
    assert meter.events == []
    assert get_billing_row(temp_db, pro_user).max_mode_usage_premium == 0


def test_each_overage_unit_is_counted(temp_db, now, pro_user, make_usage, meter):
    make_usage(pro_user, "basic", 10000, plan_tier="pro", limit_amount=10000)

    for _ in range(3):
        assert consume_usage(temp_db, pro_user, "basic", now=now, meter_reporter=meter).used_max_mode is True

    assert get_billing_row(temp_db, pro_user).max_mode_usage_basic == 3
    assert [event[0] for event in meter.events] == ["max_mode_basic"] * 3


def test_failing_meter_does_not_block_or_undo(temp_db, now, pro_user, make_usage, failing_meter):
    make_usage(pro_user, "premium", 500, plan_tier="pro", limit_amount=500)

    result = consume_usage(temp_db, pro_user, "premium", now=now, meter_reporter=failing_meter)

    assert result.used_max_mode is True
    assert failing_meter.calls == 1
    assert get_billing_row(temp_db, pro_user).max_mode_usage_premium == 1


def test_overage_after_rollover_is_included_again(temp_db, pro_user, make_usage, meter):
    make_usage(
        pro_user,
        "premium",
        520,
        plan_tier="pro",
        limit_amount=500,
        period_end=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )

    result = consume_usage(
        temp_db, pro_user, "premium", now=datetime(2026, 3, 2, tzinfo=timezone.utc), meter_reporter=meter
    )

    assert result.used_max_mode is False
    assert result.remaining == 499
    assert meter.events == []


def test_max_mode_not_used_when_subscription_past_due(temp_db, now, make_billing, make_usage, meter):
    make_billing(
        "user-pro",
        plan_id="pro_monthly",
        status="past_due",
        stripe_customer_id="cus_pro",
        max_mode_enabled=True,
    )
    make_usage("user-pro", "premium", 500, plan_tier="pro", limit_amount=500)

    with pytest.raises(UsageLimitError) as exc_info:
        consume_usage(temp_db, "user-pro", "premium", now=now, meter_reporter=meter)

    assert exc_info.value.max_mode_available is False
    assert meter.events == []
    assert get_billing_row(temp_db, "user-pro").max_mode_usage_premium == 0


def test_record_without_customer_id_skips_meter(temp_db, make_billing, meter):
    make_billing("user-pro", plan_id="pro_monthly", status="active", max_mode_enabled=True)

    success, new_usage = record_max_mode_usage(temp_db, "user-pro", UsageCategory.BASIC, meter)

    assert success is True
    assert new_usage == 1
    assert meter.events == []


def test_record_without_billing_row(temp_db, meter):
    assert record_max_mode_usage(temp_db, "nobody", UsageCategory.BASIC, meter) == (False, 0)
    assert meter.events == []


def test_meter_event_name():
    assert meter_event_name(UsageCategory.BASIC) == "max_mode_basic"
    assert meter_event_name(UsageCategory.PREMIUM) == "max_mode_premium"


def test_enable_max_mode_for_active_pro(temp_db, make_billing, now):
    make_billing("user-pro", plan_id="pro_monthly", status="active", max_mode_usage_basic=7)

    assert enable_max_mode(temp_db, "user-pro", now=now) == (True, None)

    billing = get_billing_row(temp_db, "user-pro")
    assert billing.max_mode_enabled is True
    assert billing.max_mode_usage_basic == 0
    assert ensure_utc(billing.max_mode_period_start) == now


def test_enable_max_mode_twice_is_noop(temp_db, make_billing, now):
    make_billing("user-pro", plan_id="pro_monthly", status="active")
    enable_max_mode(temp_db, "user-pro", now=now)
    record_max_mode_usage(temp_db, "user-pro", UsageCategory.PREMIUM)

    assert enable_max_mode(temp_db, "user-pro", now=now) == (True, None)
    assert get_billing_row(temp_db, "user-pro").max_mode_usage_premium == 1


@pytest.mark.parametrize("plan_id,status,error_code", [
    ("plus_monthly", "active", MAX_MODE_NOT_ELIGIBLE),
    ("pro_monthly", "past_due", SUBSCRIPTION_INACTIVE),
    ("pro_monthly", "canceled", SUBSCRIPTION_INACTIVE),
])
def test_enable_max_mode_rejected(temp_db, make_billing, plan_id, status, error_code):
    make_billing("user-1", plan_id=plan_id, status=status)

    assert enable_max_mode(temp_db, "user-1") == (False, error_code)
    assert get_billing_row(temp_db, "user-1").max_mode_enabled is False


def test_enable_max_mode_without_billing(temp_db):
    assert enable_max_mode(temp_db, "nobody") == (False, BILLING_RECORD_MISSING)
    assert disable_max_mode(temp_db, "nobody") == (False, BILLING_RECORD_MISSING)


def test_disable_max_mode_keeps_counters(temp_db, make_billing):
    make_billing("user-pro", plan_id="pro_monthly", status="active", max_mode_enabled=True, max_mode_usage_premium=4)

    assert disable_max_mode(temp_db, "user-pro") == (True, None)

    billing = get_billing_row(temp_db, "user-pro")
    assert billing.max_mode_enabled is False
    assert billing.max_mode_usage_premium == 4


def test_max_mode_status(temp_db, make_billing):
    make_billing(
        "user-pro",
        plan_id="pro_monthly",
        status="active",
        max_mode_enabled=True,
        max_mode_usage_basic=10,
        max_mode_usage_premium=3,
    )

    status = get_max_mode_status(temp_db, "user-pro")

    assert status.eligible is True
    assert status.enabled is True
    assert status.usage_basic == 10
    assert status.usage_premium == 3
    expected_cost = 10 * MAX_MODE_PRICING[UsageCategory.BASIC] + 3 * MAX_MODE_PRICING[UsageCategory.PREMIUM]
    assert status.estimated_cost_cents == expected_cost == 25
    assert status.to_dict()["estimated_cost_cents"] == 25


def test_max_mode_status_without_billing(temp_db):
    status = get_max_mode_status(temp_db, "nobody")
    assert status.eligible is False
    assert status.enabled is False
    assert status.estimated_cost_cents == 0


def test_reset_max_mode_usage(temp_db, make_billing, now):
    make_billing("user-pro", plan_id="pro_monthly", status="active", max_mode_usage_basic=5, max_mode_usage_premium=2)

    assert reset_max_mode_usage(temp_db, "user-pro", now=now) is True

    billing = get_billing_row(temp_db, "user-pro")
    assert billing.max_mode_usage_basic == 0
    assert billing.max_mode_usage_premium == 0
    assert ensure_utc(billing.max_mode_period_start) == now

    assert reset_max_mode_usage(temp_db, "nobody", now=now) is False


def test_reset_max_mode_usage_rolls_back_on_error():
    db = MagicMock()
    db.query.return_value.filter.return_value.update.side_effect = OperationalError(
        "UPDATE billing ...", {}, Exception("database is locked")
    )

    with pytest.raises(OperationalError):
        reset_max_mode_usage(db, "user-pro")

    db.rollback.assert_called_once()
    db.commit.assert_not_called()
