"""Cron entry point: runs the follow-up jobs outside the web process.

Invoked by: ``python -m src.tasks.scheduled [discovery|send|all]``

Use this with ENABLE_SCHEDULER=false when an external cron (Render cron,
Supabase pg_cron, etc.) drives the jobs instead of the in-process scheduler.
"""

import asyncio
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any

# Configure logging before any app imports
log_format = os.getenv("LOG_FORMAT", "text")
if log_format == "json":
    from pythonjsonlogger.json import JsonFormatter

    _handler = logging.StreamHandler()
    _handler.setFormatter(
        JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "service"},
            static_fields={"app": "nudge-cron"},
        )
    )
    logging.basicConfig(level=logging.INFO, handlers=[_handler])
else:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

logger = logging.getLogger("nudge.cron")

TASKS = ("discovery", "send")


async def run_tasks(names: list[str]) -> dict[str, Any]:
    """Run the named jobs sequentially, each behind its run guard."""
    from src.services.scheduler import DISCOVERY_JOB, SEND_JOB, get_follow_up_scheduler

    job_names = {"discovery": DISCOVERY_JOB, "send": SEND_JOB}
    scheduler = get_follow_up_scheduler()
    started = datetime.now(UTC)
    logger.info("=== Follow-up cron run started at %s ===", started.isoformat())

    summary: dict[str, Any] = {}
    for name in names:
        try:
            logger.info("Running task: %s", name)
            summary[name] = await scheduler.run_job(job_names[name])
            logger.info("Task %s completed: %s", name, summary[name])
        except Exception:
            logger.exception("Task %s failed", name)
            summary[name] = {"error": True}

    elapsed = (datetime.now(UTC) - started).total_seconds()
    logger.info("=== Follow-up cron run finished in %.1fs ===", elapsed)
    return summary


def parse_tasks(argv: list[str]) -> list[str]:
    """Map the command-line argument to job names."""
    choice = argv[0] if argv else "all"
    if choice == "all":
        return list(TASKS)
    if choice not in TASKS:
        raise SystemExit(f"usage: python -m src.tasks.scheduled [{'|'.join(TASKS)}|all]")
    return [choice]


def main() -> None:
    """Entry point for ``python -m src.tasks.scheduled``."""
    asyncio.run(run_tasks(parse_tasks(sys.argv[1:])))


if __name__ == "__main__":
    main()
