#!/usr/bin/env python3
"""
Import customers from a CSV file outside the web app.

Usage:
    python scripts/import_customers_csv.py customers.csv [--actor admin@example.com]

Idempotent: rows whose intNr already exists are skipped.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure repo root is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.crm import create_app
from app.crm.db import session_scope
from app.crm.models import User
from app.crm.modules.customer_import.parsers import parse_customer_csv
from app.crm.modules.customer_import.service import import_customers


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    ap.add_argument("path", type=Path)
    ap.add_argument("--actor", default=None, help="Email of the staff user recorded in the audit trail.")
    args = ap.parse_args(argv)

    if not args.path.exists():
        print(f"ERROR: {args.path} not found.")
        return 1

    rows, parse_errors = parse_customer_csv(args.path.read_bytes())
    app = create_app()
    with session_scope(app) as s:
        actor = None
        if args.actor:
            actor = s.query(User).filter(User.email == args.actor.strip().lower()).one_or_none()
            if actor is None:
                print(f"ERROR: user {args.actor!r} not found. Run scripts/init_db.py first.")
                return 1
        result = import_customers(
            s,
            rows,
            user=actor,
            parse_errors=parse_errors,
            max_retries=int(app.config.get("INT_NR_MAX_RETRIES") or 3),
        )

    print(f"Imported: {len(result.imported)}  Skipped: {len(result.skipped)}  Errors: {len(result.errors)}")
    if result.skipped:
        print(f"  Skipped customers with intNr: {', '.join(result.skipped)}")
    for err in result.errors[:20]:
        print(f"  row {err.row_number}: {err.message}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
