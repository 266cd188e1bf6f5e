#!/usr/bin/env python3
"""One-shot archival of sessions revoked or expired beyond the retention period."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

from authlife.auth.repository import build_auth_store
from authlife.auth.service import AuthService
from authlife.auth.sweeper import SessionSweeper
from authlife.core.config import AppConfig
from authlife.core.logging import setup_logging

DEFAULT_APP_ROOT = Path(__file__).resolve().parent.parent


def _parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Delete session rows revoked or expired longer ago than the retention period."
    )
    parser.add_argument(
        "--retention-days",
        type=float,
        default=None,
        help="Override SESSION_SWEEP_RETENTION_SECONDS, in days.",
    )
    parser.add_argument(
        "--app-root",
        type=Path,
        default=DEFAULT_APP_ROOT,
        help="Directory the SQLite path is resolved against.",
    )
    return parser.parse_args()


def main() -> int:
    """Run one sweep and print the number of removed rows."""
    load_dotenv()
    args = _parse_args()
    config = AppConfig.from_env()
    setup_logging(config.logging.level)

    sweep_config = config.sweep
    if args.retention_days is not None:
        if args.retention_days <= 0:
            print("ERROR: --retention-days must be positive", file=sys.stderr)
            return 2
        sweep_config = replace(sweep_config, retention=timedelta(days=args.retention_days))

    store = build_auth_store(config.storage, args.app_root)
    try:
        service = AuthService(store, config.policy, config.keys)
        removed = SessionSweeper(service, sweep_config).run_once()
        print(f"Retention: {sweep_config.retention}")
        print(f"Removed sessions: {removed}")
        return 0
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
