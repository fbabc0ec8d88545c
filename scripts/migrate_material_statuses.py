#!/usr/bin/env python3
"""
Rewrite unset and legacy inventory stack statuses to canonical conditions

Usage:
    python scripts/migrate_material_statuses.py [--dry-run]
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from marcha.db import SessionLocal
from marcha.logging import setup_logging
from marcha.services.concurrency import TransactionConflict
from marcha.services.inventory_locations import items_needing_status_audit, migrate_legacy_statuses


def migrate(dry_run: bool = False) -> int:
    db = SessionLocal()
    try:
        for item in items_needing_status_audit(db):
            statuses = sorted({str(loc.get("status")) for loc in (item.locations or [])})
            print(f"  - {item.name} ({item.id}): {', '.join(statuses)}")

        count = migrate_legacy_statuses(db, dry_run=dry_run)
        if dry_run:
            print(f"\n[DRY-RUN] Would migrate {count} items")
        else:
            print(f"\n[SUCCESS] Migrated {count} items")
        return 0
    except TransactionConflict as e:
        print(f"[ERROR] Inventory changed while migrating, run again: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Migrate legacy material statuses")
    parser.add_argument("--dry-run", action="store_true", help="Dry run mode - don't make changes")
    args = parser.parse_args()

    setup_logging()
    sys.exit(migrate(dry_run=args.dry_run))
