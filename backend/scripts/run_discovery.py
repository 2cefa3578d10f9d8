"""
Run Discovery Script - Executes vendor discovery from the command line,
outside the API process.

Manual runs share the pipeline, quota accounting and conversation state
with the scheduler, so they count toward today's daily cap.

Usage:
    cd backend
    python -m scripts.run_discovery --job-id 65c1f0...          # Run one job now
    python -m scripts.run_discovery --area "Bay Area"           # Every active job in an area
    python -m scripts.run_discovery --specialty florist         # Every active florist job
    python -m scripts.run_discovery --sweep                     # One scheduler tick (run hour applies)
    python -m scripts.run_discovery --area "Bay Area" --dry-run # List matching jobs only
"""

import argparse
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import connect_to_mongo, close_mongo_connection
from models.discovery import DiscoveryJob, DiscoveryLogEntry, RunTrigger
from services.clock import ReferenceClock
from services.discovery_pipeline import DiscoveryPipeline
from services.discovery_provider import GeminiDiscoveryProvider
from services.scheduler import JobScheduler
from services.storage import MongoDiscoveryStorage


def filter_jobs(
    jobs: list[DiscoveryJob],
    area: str | None = None,
    specialty: str | None = None,
) -> list[DiscoveryJob]:
    """Filter jobs by area and/or specialty (case-insensitive)."""
    if area:
        jobs = [j for j in jobs if j.area.lower() == area.lower()]
    if specialty:
        jobs = [j for j in jobs if j.specialty.lower() == specialty.lower()]
    return jobs


def format_entry(entry: DiscoveryLogEntry) -> str:
    """One printable line per run log entry."""
    line = f"  [{entry.level.upper():5}] {entry.message}"
    if entry.level in ("warn", "error") and entry.data and "error" in entry.data:
        line += f" ({entry.data['error']})"
    return line


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run vendor discovery jobs")
    parser.add_argument("--job-id", type=str, help="Run a single job by id")
    parser.add_argument("--area", type=str, help="Run active jobs in this area")
    parser.add_argument("--specialty", type=str, help="Run active jobs for this specialty")
    parser.add_argument("--sweep", action="store_true", help="Run one scheduler tick instead")
    parser.add_argument("--dry-run", action="store_true", help="List matching jobs without running them")
    return parser.parse_args(argv)


async def main(argv=None):
    args = parse_args(argv)

    print("=" * 60)
    print("Vendor Discovery - Manual Run")
    print("=" * 60)

    await connect_to_mongo()
    try:
        storage = MongoDiscoveryStorage()
        clock = ReferenceClock()
        pipeline = DiscoveryPipeline(storage, GeminiDiscoveryProvider(), clock=clock)
        scheduler = JobScheduler(storage, pipeline, clock)
        config = await scheduler.get_config()
        print(f"Today ({clock.timezone_name}): {clock.today()}  |  Daily cap: {config.daily_cap}\n")

        if args.sweep:
            results = await scheduler.check_and_run()
            print(f"Sweep finished: {len(results)} run(s), {sum(r.staged for r in results)} staged")
            return

        if args.job_id:
            job = await storage.get_job(args.job_id)
            if job is None:
                print(f"ERROR: job {args.job_id} not found")
                sys.exit(1)
            jobs = [job]
        else:
            jobs = filter_jobs(await storage.get_active_jobs(), args.area, args.specialty)

        if not jobs:
            print("No jobs match the given filters.")
            return

        for i, job in enumerate(jobs, 1):
            print(f"[{i}/{len(jobs)}] {job.area} / {job.specialty}  "
                  f"(found {job.total_discovered}/{job.max_total or 'uncapped'})")
            if args.dry_run:
                continue

            result = await pipeline.execute_job(job, config.daily_cap, RunTrigger.MANUAL)
            for entry in result.logs:
                if entry.level != "debug":
                    print(format_entry(entry))
            print(f"  => {result.status}: staged {result.staged}, duplicates {result.duplicates_found}\n")
    finally:
        await close_mongo_connection()

    print("=" * 60)
    print("Done!")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    asyncio.run(main())
