"""
Concurrency tests: parallel consumers can never overshoot a ceiling.

Uses a file-backed SQLite database so every thread has its own connection.
"""
import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import NEXT_PERIOD_END, RecordingMeterReporter
from config import settings
from db import Base
from models import Billing, UsageQuota
from services.usage import UsageLimitError, consume_usage

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)
THREADS = 12


@pytest.fixture
def file_db(tmp_path, monkeypatch):
    # SQLite answers lock upgrades that could deadlock with an immediate
    # "database is locked"; those statements are retried by execute_atomic
    monkeypatch.setattr(settings, "usage_write_attempts", 25)
    engine = create_engine(
        f"sqlite:///{tmp_path / 'usage.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=THREADS,
        max_overflow=0,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False)
    try:
        yield SessionLocal
    finally:
        engine.dispose()


def _run_parallel(SessionLocal, target, count=THREADS):
    barrier = threading.Barrier(count)
    outcomes = []
    lock = threading.Lock()

    def worker():
        db = SessionLocal()
        try:
            barrier.wait()
            outcome = target(db)
        except UsageLimitError:
            outcome = "limit"
        except Exception as e:
            outcome = e
        finally:
            db.close()
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


def _used(SessionLocal, user_id, category):
    db = SessionLocal()
    try:
        return db.query(UsageQuota).filter_by(user_id=user_id, category=category).one().used
    finally:
        db.close()


def test_parallel_consumers_respect_remaining(file_db):
    """With R units left and N > R parallel requests exactly R succeed."""
    seed = file_db()
    seed.add(UsageQuota(
        user_id="user-1",
        category="premium",
        plan_tier="free",
        limit_amount=50,
        used=47,
        period_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        period_end=NEXT_PERIOD_END,
    ))
    seed.commit()
    seed.close()

    outcomes = _run_parallel(file_db, lambda db: consume_usage(db, "user-1", "premium", now=NOW))

    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert errors == []
    assert len([o for o in outcomes if o != "limit"]) == 3
    assert outcomes.count("limit") == THREADS - 3
    assert _used(file_db, "user-1", "premium") == 50


def test_parallel_first_use_creates_single_row(file_db):
    outcomes = _run_parallel(file_db, lambda db: consume_usage(db, "user-2", "basic", now=NOW))

    assert all(o != "limit" and not isinstance(o, Exception) for o in outcomes)
    assert _used(file_db, "user-2", "basic") == THREADS


def test_parallel_overage_counts_every_unit(file_db):
    seed = file_db()
    seed.add(Billing(
        user_id="user-pro",
        plan_id="pro_monthly",
        status="active",
        stripe_customer_id="cus_pro",
        max_mode_enabled=True,
    ))
    seed.add(UsageQuota(
        user_id="user-pro",
        category="premium",
        plan_tier="pro",
        limit_amount=500,
        used=498,
        period_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        period_end=NEXT_PERIOD_END,
    ))
    seed.commit()
    seed.close()

    meter = RecordingMeterReporter()
    outcomes = _run_parallel(
        file_db,
        lambda db: consume_usage(db, "user-pro", "premium", now=NOW, meter_reporter=meter),
    )

    assert [o for o in outcomes if isinstance(o, Exception) or o == "limit"] == []
    assert sum(1 for o in outcomes if o.used_max_mode) == THREADS - 2
    assert len(meter.events) == THREADS - 2

    db = file_db()
    try:
        billing = db.query(Billing).filter_by(user_id="user-pro").one()
        assert billing.max_mode_usage_premium == THREADS - 2
    finally:
        db.close()
    assert _used(file_db, "user-pro", "premium") == 498 + THREADS
