"""
Release phase for the customer back office.

Steps:
1. Load and check settings (same env vars the app reads; bad integers fail here, not in a worker).
2. alembic upgrade head
3. Verify the customer tables exist and every stored intNr is canonical K-NNNN.
   A non-canonical value would derail identifier generation, so the release stops.
4. Seed permissions/roles/admin (idempotent; never overwrites a password).

Usage:
  python scripts/release.py [--no-seed]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from sqlalchemy import inspect, select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.crm.config import Settings, load_settings
from app.crm.modules.customers.models import Customer
from app.crm.modules.customers.utils import is_valid_int_nr
from scripts._db_utils import create_script_engine, script_session

REQUIRED_TABLES = (
    "users",
    "roles",
    "permissions",
    "audit_events",
    "customers",
    "customer_addresses",
    "customer_contact_persons",
)
REQUIRED_CUSTOMER_COLUMNS = ("int_nr", "type", "version")


def check_settings(settings: Settings) -> None:
    is_production = settings.env.lower() in ("prod", "production")
    if not is_production:
        return
    if settings.database_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against a SQLite DATABASE_URL in production. Use Postgres.")
    if settings.secret_key in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production.")


def verify_schema(settings: Settings) -> None:
    engine = create_script_engine(settings.database_url, settings.db_timeout_seconds)
    try:
        insp = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        if missing:
            raise RuntimeError(f"Schema incomplete after migrations; missing tables: {', '.join(missing)}")
        columns = {c["name"] for c in insp.get_columns("customers")}
        absent = [c for c in REQUIRED_CUSTOMER_COLUMNS if c not in columns]
        if absent:
            raise RuntimeError(f"customers table lacks columns: {', '.join(absent)}")
    finally:
        engine.dispose()


def find_malformed_int_nrs(settings: Settings) -> list[str]:
    with script_session(settings.database_url) as s:
        stored = s.execute(select(Customer.int_nr)).scalars().all()
    return sorted(v for v in stored if not is_valid_int_nr(v))


def run_release(*, seed: bool = True) -> None:
    settings = load_settings()
    check_settings(settings)

    print("=== CRM release start ===", flush=True)
    print(f"ENV={settings.env} DB_TIMEOUT_SECONDS={settings.db_timeout_seconds}", flush=True)

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", settings.database_url)
    command.upgrade(cfg, "head")
    print("Migrations complete.", flush=True)

    verify_schema(settings)
    bad = find_malformed_int_nrs(settings)
    if bad:
        shown = ", ".join(bad[:10])
        raise RuntimeError(f"{len(bad)} customer(s) have a non-canonical intNr ({shown}). Fix them before release.")
    print("Schema and intNr check passed.", flush=True)

    if seed:
        from scripts import init_db

        init_db.seed_only(database_url=settings.database_url)
        print("Seed complete.", flush=True)
    print("=== CRM release done ===", flush=True)


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Migrate, verify and seed the customer back office database.")
    ap.add_argument("--no-seed", action="store_true", help="Skip seeding permissions/roles/admin user.")
    args = ap.parse_args(argv)
    run_release(seed=not args.no_seed)


if __name__ == "__main__":
    main()
