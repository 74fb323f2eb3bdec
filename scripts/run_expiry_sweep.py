#!/usr/bin/env python3
"""
Run the subscription expiry sweep outside HTTP.

Lapses every subscription whose expiry is before --now (default: current time)
to free, in both Supabase Auth and the users table.

Run from project root with DATABASE_URL and Supabase credentials set:
  python scripts/run_expiry_sweep.py
  python scripts/run_expiry_sweep.py --now 2025-01-02T00:00:00Z
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv(project_root / ".env")

from app.core.config import settings
from app.core.membership import parse_timestamp, utcnow
from app.db.session import SessionLocal
from app.services.identity_store import SupabaseIdentityStore
from app.services.reconciler import ExpirySweep, MembershipReconciler
from app.services.user_table import UserTable


def main() -> int:
    parser = argparse.ArgumentParser(description="Lapse expired subscriptions to free.")
    parser.add_argument("--now", help="ISO-8601 cutoff (default: now, UTC)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    now = parse_timestamp(args.now) if args.now else utcnow()
    if now is None:
        print(f"ERROR: could not parse --now {args.now!r}")
        return 1

    db = SessionLocal()
    try:
        reconciler = MembershipReconciler(
            SupabaseIdentityStore(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY),
            UserTable(db),
            renewal_buffer=settings.RENEWAL_GRACE_BUFFER,
        )
        report = reconciler.reconcile(ExpirySweep(now=now))
    finally:
        db.close()

    print(
        f"Downgraded {report.updated_count} (degraded {report.degraded_count}), "
        f"refused {report.refused_count}, failed {report.failed_count}"
    )
    return 1 if report.failed_count else 0


if __name__ == "__main__":
    sys.exit(main())
