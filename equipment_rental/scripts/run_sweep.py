#!/usr/bin/env python3
"""Run one lifecycle sweeper job from the terminal, e.g. from cron."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime

from dotenv import load_dotenv

from equipment_rental.logging_config import configure_logging
from equipment_rental.services.sweeper import JOB_FUNCTIONS, JOB_NAMES


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a reservation lifecycle sweep once.")
    parser.add_argument("job", choices=[*JOB_NAMES, "all"], help="Sweeper job to run")
    parser.add_argument(
        "--at",
        default=None,
        help="ISO timestamp to run the job as of (defaults to now), e.g. 2025-09-04T18:00",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        now = datetime.fromisoformat(args.at) if args.at else datetime.now()
    except ValueError:
        parser.error(f"--at is not an ISO timestamp: {args.at}")

    load_dotenv()
    configure_logging()
    from equipment_rental.db.session import SessionLocalRental

    jobs = JOB_NAMES if args.job == "all" else (args.job,)
    results = {}
    failed = 0
    for name in jobs:
        with SessionLocalRental() as db:
            summary = JOB_FUNCTIONS[name](db, now)
        results[name] = summary
        failed += int(summary.get("failed") or 0)

    print(json.dumps({"at": now.isoformat(), "results": results}, indent=2, default=str))
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
