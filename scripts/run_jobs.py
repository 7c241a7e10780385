#!/usr/bin/env python3
"""Run an engine job once, outside the API process.

For deployments that prefer cron over the in-process scheduler
(set SCHEDULER_ENABLED=false on the API):

    0 1 * * *  cd /opt/hrms-engine && python3 scripts/run_jobs.py sync
    0 2 * * *  cd /opt/hrms-engine && python3 scripts/run_jobs.py sweep

Usage:
    python scripts/run_jobs.py sync                   # attendance reconciliation
    python scripts/run_jobs.py sweep                  # unclaimed-overtime sweep
    python scripts/run_jobs.py sweep --today 2026-03-10
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from pathlib import Path

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

# Settings are read at import time, so .env must be loaded first
env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

from hrms_engine.common.exceptions import ExternalSourceException  # noqa: E402
from hrms_engine.common.logging_setup import setup_logging  # noqa: E402
from hrms_engine.database import engine  # noqa: E402
from hrms_engine.scheduler import JobRunner  # noqa: E402

logger = logging.getLogger("run_jobs")


async def _run(job: str, today: date | None) -> int:
    runner = JobRunner()
    try:
        if job == "sync":
            result = await runner.run_attendance_sync()
        else:
            result = await runner.run_overtime_sweep(today=today)
    except ExternalSourceException as exc:
        logger.error("Punch source unavailable: %s", exc.detail)
        return 2
    finally:
        await engine.dispose()

    if result is None:
        logger.warning("Job %s skipped", job)
        return 1
    logger.info("Job %s finished: %s", job, result.model_dump_json())
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Run an HRMS engine job once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("job", choices=["sync", "sweep"], help="Job to run")
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Override the sweep's local date (YYYY-MM-DD)",
    )
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    args = parser.parse_args()

    setup_logging(args.log_level)
    sys.exit(asyncio.run(_run(args.job, args.today)))


if __name__ == "__main__":
    main()
