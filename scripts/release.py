"""
Release phase, run once per deploy before the web process starts:

- refuse to continue without DATABASE_URL, or on sqlite in production;
- report integration keys the install wizard would flag;
- ``alembic upgrade head``;
- seed the platform admin, demo school and catalog (skip with SKIP_SEED=1);
- flag invoices that went past due while nothing was running.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}. Set it in the app's environment settings.")
    return v


def _report_integrations() -> None:
    from app.enrollsage.env_check import check_all_env_vars

    status = check_all_env_vars()
    if status.configured:
        print("Integrations: all required keys present.", flush=True)
        return
    for key in status.missing_required:
        print(f"[warn] {key} is not set", flush=True)
    for check in status.checks:
        if check.key in status.invalid_keys:
            print(f"[warn] {check.error}", flush=True)


def _upgrade(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def _sweep_overdue(db_url: str) -> int:
    from app.enrollsage.modules.billing.service import mark_overdue_invoices
    from app.enrollsage.db import url_session_scope

    with url_session_scope(db_url) as s:
        return mark_overdue_invoices(s)


def run_release() -> None:
    db_url = _require_env("DATABASE_URL")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if db_url.startswith("sqlite"):
            raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
        _require_env("SECRET_KEY")

    print(f"=== EnrollSage release (ENV={env or 'unset'}) ===", flush=True)
    _report_integrations()

    print("Running Alembic migrations...", flush=True)
    _upgrade(db_url)
    print("Migrations complete.", flush=True)

    if (os.environ.get("SKIP_SEED") or "").strip() == "1":
        print("SKIP_SEED=1, not seeding.", flush=True)
    else:
        from scripts import init_db

        init_db.seed_only(database_url=db_url)

    flagged = _sweep_overdue(db_url)
    print(f"Marked {flagged} invoice(s) overdue.", flush=True)
    print("=== EnrollSage release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
