#!/usr/bin/env python3
"""
Container entrypoint: release phase, then exec gunicorn on $PORT.

Tunables (all optional):
    PORT               listen port, default 8080
    WEB_CONCURRENCY    gunicorn workers, default 2
    GUNICORN_TIMEOUT   worker timeout in seconds, default 60
    SKIP_RELEASE=1     start the web process without migrating/seeding

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bounded_int(name: str, default: int, low: int, high: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = None
    if value is None or not low <= value <= high:
        print(f"ERROR: {name}={raw!r} must be an integer between {low} and {high}.", flush=True)
        sys.exit(1)
    return value


def gunicorn_argv(port: int, workers: int, timeout: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _bounded_int("PORT", 8080, 1, 65535)
    workers = _bounded_int("WEB_CONCURRENCY", 2, 1, 32)
    timeout = _bounded_int("GUNICORN_TIMEOUT", 60, 10, 600)

    if (os.environ.get("SKIP_RELEASE") or "").strip() == "1":
        print("SKIP_RELEASE=1, not running migrations.", flush=True)
    else:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    print(f"Starting gunicorn on 0.0.0.0:{port} ({workers} workers); health check at /healthz", flush=True)
    # gunicorn replaces this process so it receives signals directly.
    os.execvp("gunicorn", gunicorn_argv(port, workers, timeout))


if __name__ == "__main__":
    main()
