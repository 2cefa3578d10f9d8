"""
Job Scheduler - Decides when and whether each discovery job runs.

Scheduled sweeps run once per configured hour in the reference timezone,
process jobs sequentially and stop as soon as the global daily cap is
used up. Manual runs bypass the hour gate and run in the background.
Every run, scheduled or manual, is registered with a cancel token while
it is in flight so an admin cancel reaches the running pipeline.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Set

from config import settings
from models.discovery import (
    DiscoveryJob,
    DiscoveryResult,
    DiscoveryRun,
    RunStatus,
    RunTrigger,
    SchedulerConfig,
)
from services.cancellation import (
    DEFAULT_CANCEL_REASON,
    CancellationRegistry,
    CancellationToken,
)
from services.clock import ReferenceClock
from services.discovery_pipeline import DiscoveryPipeline
from services.storage import DiscoveryStorage

logger = logging.getLogger("vendor_discovery")

ORPHAN_CANCEL_REASON = "Cancelled by admin (no active process found)"


class JobNotFoundError(Exception):
    """Raised when a manual run is requested for an unknown job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Discovery job not found: {job_id}")


class JobScheduler:
    def __init__(
        self,
        storage: DiscoveryStorage,
        pipeline: DiscoveryPipeline,
        clock: Optional[ReferenceClock] = None,
        default_config: Optional[SchedulerConfig] = None,
    ):
        self._storage = storage
        self._pipeline = pipeline
        self._clock = clock or ReferenceClock()
        self._default_config = default_config or SchedulerConfig.clamped(
            settings.DISCOVERY_RUN_HOUR, settings.DISCOVERY_DAILY_CAP
        )
        self._config: Optional[SchedulerConfig] = None
        self.registry = CancellationRegistry()

        self._is_running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()
        self._manual_tasks: Set[asyncio.Task] = set()

    @property
    def started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def timezone_name(self) -> str:
        return self._clock.timezone_name

    @property
    def is_running(self) -> bool:
        """True while a scheduled sweep is in progress."""
        return self._is_running

    # ── Config ───────────────────────────────────────────────────────────────

    async def load_config(self) -> SchedulerConfig:
        stored = await self._storage.get_scheduler_config()
        self._config = stored or self._default_config
        logger.info(
            "Scheduler config loaded",
            extra={
                "event": "scheduler_config_loaded",
                "source": "storage" if stored else "defaults",
                "run_hour": self._config.run_hour,
                "daily_cap": self._config.daily_cap,
                "timezone": self._clock.timezone_name,
            },
        )
        return self._config

    async def get_config(self) -> SchedulerConfig:
        if self._config is None:
            return await self.load_config()
        return self._config

    async def update_config(
        self,
        run_hour: Optional[int] = None,
        daily_cap: Optional[int] = None,
    ) -> SchedulerConfig:
        """Persist new settings. Out-of-range values are clamped."""
        current = await self.get_config()
        config = SchedulerConfig.clamped(
            current.run_hour if run_hour is None else run_hour,
            current.daily_cap if daily_cap is None else daily_cap,
        )
        await self._storage.save_scheduler_config(config)
        self._config = config
        return config

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self, tick_interval_seconds: Optional[float] = None):
        if self.started:
            logger.warning("Scheduler already started", extra={"event": "scheduler_already_started"})
            return

        config = await self.load_config()
        interval = tick_interval_seconds or settings.DISCOVERY_TICK_SECONDS
        self._loop_task = asyncio.create_task(self._tick_loop(interval))
        logger.info(
            "Scheduler started",
            extra={
                "event": "scheduler_started",
                "tick_interval_seconds": interval,
                "run_hour": config.run_hour,
                "daily_cap": config.daily_cap,
            },
        )

    async def stop(self, cancel_active: bool = False):
        """Stop ticking. Optionally signal every in-flight run."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        cancelled = self.registry.cancel_all() if cancel_active else 0
        logger.info(
            "Scheduler stopped",
            extra={"event": "scheduler_stopped", "cancelled_runs": cancelled},
        )

    async def join(self):
        """Wait for every spawned tick and manual run to finish."""
        pending = [*self._tick_tasks, *self._manual_tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _tick_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            task = asyncio.create_task(self.check_and_run())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)

    # ── Scheduled sweep ──────────────────────────────────────────────────────

    async def check_and_run(self) -> List[DiscoveryResult]:
        """
        One scheduler tick.

        Does nothing outside the configured hour, while a previous tick is
        still running, or once today's global cap is reached. Otherwise
        runs every active job that has no successful run today, one at a
        time, re-checking the global count before each job.
        """
        if self._is_running:
            logger.info("Previous tick still running, skipping", extra={"event": "scheduler_tick_overlap"})
            return []

        self._is_running = True
        results: List[DiscoveryResult] = []
        start = time.time()
        try:
            config = await self.get_config()
            hour = self._clock.current_hour()
            if hour != config.run_hour:
                logger.debug(
                    "Outside run hour",
                    extra={"event": "scheduler_outside_run_hour", "hour": hour, "run_hour": config.run_hour},
                )
                return results

            today = self._clock.today()
            today_count = await self._storage.count_staged_on(today)
            if today_count >= config.daily_cap:
                logger.info(
                    "Daily cap already reached",
                    extra={"event": "scheduler_cap_reached", "today_count": today_count, "daily_cap": config.daily_cap},
                )
                return results

            jobs = await self._storage.get_active_jobs()
            logger.info(
                "Scheduled sweep starting",
                extra={
                    "event": "scheduler_sweep_start",
                    "run_date": today,
                    "active_jobs": len(jobs),
                    "today_count": today_count,
                    "daily_cap": config.daily_cap,
                },
            )

            for job in jobs:
                today_count = await self._storage.count_staged_on(today)
                if today_count >= config.daily_cap:
                    logger.info(
                        "Daily cap reached mid-sweep, stopping",
                        extra={"event": "scheduler_cap_reached", "today_count": today_count, "daily_cap": config.daily_cap},
                    )
                    break

                if await self._ran_successfully_today(job, today):
                    logger.debug(
                        "Job already ran today",
                        extra={"event": "scheduler_job_already_ran", "job_id": job.id, "run_date": today},
                    )
                    continue

                run_id, token = await self._queue_run(job, today, RunTrigger.SCHEDULER)
                try:
                    result = await self._pipeline.execute_job(
                        job,
                        config.daily_cap,
                        RunTrigger.SCHEDULER,
                        run_id=run_id,
                        cancel_token=token,
                    )
                    results.append(result)
                except Exception as e:
                    logger.error(
                        "Scheduled job raised",
                        extra={"event": "scheduler_job_error", "job_id": job.id, "run_id": run_id, "error": str(e)},
                    )
                    await self._mark_failed(run_id, str(e) or type(e).__name__)
                finally:
                    self.registry.pop(run_id)

            logger.info(
                "Scheduled sweep complete",
                extra={
                    "event": "scheduler_sweep_complete",
                    "runs": len(results),
                    "staged": sum(r.staged for r in results),
                    "duration_ms": round((time.time() - start) * 1000, 2),
                },
            )
        except Exception as e:
            logger.error("Scheduler tick failed", extra={"event": "scheduler_tick_error", "error": str(e)})
        finally:
            self._is_running = False

        return results

    async def _ran_successfully_today(self, job: DiscoveryJob, today: str) -> bool:
        runs = await self._storage.list_runs(job_id=job.id, run_date=today)
        return any(run.is_successful for run in runs)

    async def _queue_run(self, job: DiscoveryJob, run_date: str, triggered_by: RunTrigger):
        """Create a queued run record and register a cancel token for it."""
        run = await self._storage.create_run(DiscoveryRun(
            job_id=job.id,
            run_date=run_date,
            status=RunStatus.QUEUED,
            triggered_by=triggered_by,
        ))
        token = CancellationToken()
        self.registry.register(run.id, job.id, token)
        return run.id, token

    # ── Manual runs ──────────────────────────────────────────────────────────

    async def run_job_now(self, job_id: str) -> str:
        """
        Queue a manual run and return its id immediately.

        The pipeline runs in a background task; its cancellation token
        stays in the registry until the task ends.
        """
        job = await self._storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        config = await self.get_config()
        run_id, token = await self._queue_run(job, self._clock.today(), RunTrigger.MANUAL)
        task = asyncio.create_task(self._run_manual(job, run_id, token, config.daily_cap))
        self._manual_tasks.add(task)
        task.add_done_callback(self._manual_tasks.discard)

        logger.info(
            "Manual run queued",
            extra={"event": "manual_run_queued", "job_id": job.id, "run_id": run_id},
        )
        return run_id

    async def _run_manual(self, job: DiscoveryJob, run_id: str, token: CancellationToken, daily_cap: int):
        try:
            result = await self._pipeline.execute_job(
                job,
                daily_cap,
                triggered_by=RunTrigger.MANUAL,
                run_id=run_id,
                cancel_token=token,
            )
            logger.info(
                "Manual run finished",
                extra={"event": "manual_run_finished", "run_id": run_id, "status": result.status, "staged": result.staged},
            )
        except Exception as e:
            logger.error(
                "Manual run raised",
                extra={"event": "manual_run_error", "job_id": job.id, "run_id": run_id, "error": str(e)},
            )
            await self._mark_failed(run_id, str(e) or type(e).__name__)
        finally:
            self.registry.pop(run_id)

    async def _mark_failed(self, run_id: str, error: str):
        try:
            await self._storage.finish_run(run_id, {
                "status": RunStatus.FAILED,
                "error": error,
                "finished_at": datetime.now(timezone.utc),
            })
        except Exception as e:
            logger.error(
                "Could not mark run failed",
                extra={"event": "run_mark_failed_error", "run_id": run_id, "error": str(e)},
            )

    async def cancel_run(self, run_id: str) -> bool:
        """
        Cancel a run by id.

        Signals the in-flight token when this process owns the run; the
        run's own task records the cancelled status. Otherwise a run
        persisted as queued/running is marked cancelled directly. Returns
        False when there is nothing left to cancel.
        """
        handle = self.registry.get(run_id)
        if handle is not None:
            handle.token.cancel(DEFAULT_CANCEL_REASON)
            logger.info(
                "Run cancellation signalled",
                extra={"event": "run_cancel_signalled", "run_id": run_id, "job_id": handle.job_id},
            )
            return True

        run = await self._storage.get_run(run_id)
        if run is None:
            return False

        cancelled = await self._storage.finish_run(run_id, {
            "status": RunStatus.CANCELLED,
            "error": ORPHAN_CANCEL_REASON,
            "finished_at": datetime.now(timezone.utc),
        })
        if cancelled:
            logger.warning(
                "Orphaned run marked cancelled",
                extra={"event": "run_cancel_orphaned", "run_id": run_id, "job_id": run.job_id},
            )
        return cancelled
