#!/usr/bin/env python3
"""
Reconcile users.points with the point_logs ledger

Usage:
    python scripts/backfill_points.py                 # every user
    python scripts/backfill_points.py --email EMAIL   # one user
    python scripts/backfill_points.py --email EMAIL --debug   # report only
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from marcha.db import SessionLocal
from marcha.logging import setup_logging
from marcha.services.gamification import (
    UserNotFound,
    backfill_points,
    debug_user_gamification,
    force_backfill_user,
)


def run(email: str = None, debug: bool = False) -> int:
    db = SessionLocal()
    try:
        if email and debug:
            report = debug_user_gamification(db, email)
            user = report["user"]
            print(f"User: {user['name']} <{user['email']}> ({user['role']})")
            print(f"  users.points: {user['points']}")
            print(f"  ledger total: {report['logged_total']} over {report['logs_count']} entries")
            print(f"  mismatch:     {report['points_mismatch']}")
            for log in report["logs_sample"]:
                print(f"    {log['created_at']}  {log['points']:>5}  {log['reason']}")
            return 0

        if email:
            result = force_backfill_user(db, email)
            if result["success"]:
                print(f"[OK] Added {result['diff']} points to the ledger of {email}")
            else:
                print(f"[SKIP] {result['message']} (diff {result['diff']})")
            return 0

        if debug:
            print("[ERROR] --debug needs --email")
            return 2

        result = backfill_points(db)
        print(f"[OK] Corrected {result['updated_count']} users, {result['errors_count']} errors")
        return 1 if result["errors_count"] else 0
    except UserNotFound as e:
        print(f"[ERROR] {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile denormalized point totals with the ledger")
    parser.add_argument("--email", help="Only reconcile this user")
    parser.add_argument("--debug", action="store_true", help="Report the drift for --email without writing")
    args = parser.parse_args()

    setup_logging()
    sys.exit(run(email=args.email, debug=args.debug))
