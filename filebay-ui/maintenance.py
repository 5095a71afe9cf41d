#!/usr/bin/env python3
"""Housekeeping for cron.

    python maintenance.py trash-cleanup --days 30
    python maintenance.py activity-cleanup --days 90
    python maintenance.py staging-purge --hours 24
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from services.activity_log import ActivityLog
from services.chunks import ChunkAssembler
from services.logging_setup import core_log as _core_log, setup_logging
from services.paths import RootContext
from services.settings import Settings
from services.trash import TrashStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="filebay maintenance tasks")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("trash-cleanup", help="permanently delete old trash items")
    p.add_argument("--days", type=float, default=None, help="age in days (default: FILEBAY_TRASH_TTL_DAYS)")

    p = sub.add_parser("activity-cleanup", help="drop old activity log entries")
    p.add_argument("--days", type=float, default=30.0)

    p = sub.add_parser("staging-purge", help="remove abandoned chunked uploads")
    p.add_argument("--hours", type=float, default=None, help="age in hours (default: FILEBAY_STAGING_MAX_AGE_HOURS)")
    return parser


def run(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or Settings.from_env()
    settings.ensure_dirs()
    setup_logging(settings.log_dir)

    if args.command == "trash-cleanup":
        days = args.days if args.days is not None else float(settings.trash_ttl_days or 30)
        report = TrashStore(settings.trash_dir).cleanup_older_than(days)
        _core_log("info", "maintenance.trash_cleanup", days=days, deleted=len(report.succeeded), errors=len(report.failed))
        print(f"deleted {len(report.succeeded)} trash item(s), {len(report.failed)} error(s)")
        for f in report.failed:
            print(f"  {f.target}: {f.code} {f.message}", file=sys.stderr)
        return 0 if not report.failed else 1

    if args.command == "activity-cleanup":
        removed = ActivityLog(settings.activity_log, settings.activity_max_entries).cleanup(args.days)
        _core_log("info", "maintenance.activity_cleanup", days=args.days, removed=removed)
        print(f"removed {removed} activity entr{'y' if removed == 1 else 'ies'}")
        return 0

    hours = args.hours if args.hours is not None else float(settings.staging_max_age_hours)
    assembler = ChunkAssembler(RootContext.from_path(settings.root, reserved=settings.internal_paths()), settings.staging_dir)
    removed = assembler.purge_stale(hours * 3600)
    _core_log("info", "maintenance.staging_purge", hours=hours, removed=removed)
    print(f"removed {removed} stale staging entr{'y' if removed == 1 else 'ies'}")
    return 0


if __name__ == "__main__":
    sys.exit(run())
