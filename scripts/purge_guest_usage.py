#!/usr/bin/env python3
"""
Delete stale guest (anonymous) usage rows.

Guest rows never roll over, so without a retention job they accumulate one
row per guest session and category. Run daily from cron.

Usage:
    python3 scripts/purge_guest_usage.py [--days N]
"""
import argparse
import logging
import os
import sys

# Add parent directory to path to import backend modules
script_dir = os.path.dirname(os.path.abspath(__file__))
backend_dir = os.path.dirname(script_dir)
sys.path.insert(0, backend_dir)

from config import settings  # noqa: E402
from db import get_db  # noqa: E402
from services.usage import purge_guest_usage  # noqa: E402

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete guest usage rows older than the retention window")
    parser.add_argument(
        "--days",
        type=int,
        default=settings.guest_usage_retention_days,
        help=f"Retention window in days (default: {settings.guest_usage_retention_days})",
    )
    args = parser.parse_args(argv)

    db = next(get_db())
    try:
        deleted = purge_guest_usage(db, max_age_days=args.days)
    finally:
        db.close()

    print(f"✓ Deleted {deleted} guest usage rows older than {args.days} days")
    return 0


if __name__ == "__main__":
    sys.exit(main())
