#!/usr/bin/env python3
"""
Container entry point: release phase, then gunicorn serving app.wsgi:app.

Environment:
  PORT              listen port (default 8080)
  WEB_CONCURRENCY   gunicorn workers (default 2)
  DB_TIMEOUT_SECONDS  also sizes the worker timeout, so a slow storage call
                      surfaces as StorageTimeout (JSON 500) before gunicorn kills the worker

Usage:
    python scripts/start.py [--skip-release]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.crm.config import load_settings

MIN_WORKER_TIMEOUT = 30


def _int_env(name: str, default: int, lo: int, hi: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = lo - 1
    if not lo <= value <= hi:
        print(f"ERROR: {name}={raw!r} must be an integer between {lo} and {hi}.", flush=True)
        sys.exit(1)
    return value


def gunicorn_argv(port: int, workers: int, db_timeout_seconds: int) -> list[str]:
    worker_timeout = max(MIN_WORKER_TIMEOUT, db_timeout_seconds * 3)
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(worker_timeout),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Run the release phase and start gunicorn.")
    ap.add_argument("--skip-release", action="store_true", help="Start serving without migrating/seeding.")
    args = ap.parse_args(argv)

    port = _int_env("PORT", 8080, 1, 65535)
    workers = _int_env("WEB_CONCURRENCY", 2, 1, 64)
    settings = load_settings()

    if not args.skip_release:
        from scripts.release import run_release
        try:
            run_release()
        except RuntimeError as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    print(f"=== Starting gunicorn on 0.0.0.0:{port} ({workers} workers) ===", flush=True)
    # exec so gunicorn becomes PID 1 and receives signals directly
    os.execvp("gunicorn", gunicorn_argv(port, workers, settings.db_timeout_seconds))


if __name__ == "__main__":
    main()
