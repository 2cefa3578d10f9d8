"""
Discovery Pipeline - One end-to-end vendor discovery attempt for one job.

Steps, each able to end the run early:
  1. validity (end date, lifetime cap)
  2. quota arithmetic (per-run, per-job and global daily budget)
  3. exclusion list from staged + onboarded vendor names
  4. conversation load for (area, specialty)
  5. provider call
  6. safety-net dedup + staging
  7. website verification (never fails the run)
  8. bookkeeping: job counters and conversation save (save never fails the run)

Every run ends in exactly one terminal status. Errors before step 7 fail
the run; partial progress already written is left in place.
"""

import asyncio
import logging
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models.conversation import ConversationTurn
from models.discovery import (
    DiscoveryJob,
    DiscoveryLogEntry,
    DiscoveryResult,
    DiscoveryRun,
    RunStatus,
    RunTrigger,
)
from models.vendor import StagedVendor, WebsiteVerification
from services.cancellation import CancellationToken, RunCancelled
from services.clock import ReferenceClock
from services.conversation_store import ConversationStore
from services.discovery_provider import DiscoveryProvider
from services.storage import DiscoveryStorage
from services.vendor_dedup import (
    MAX_EXCLUDE_NAMES,
    build_exclusion_list,
    classify_candidates,
    normalize_vendor_name,
)
from services.website_verifier import VERIFY_MAX_PER_RUN, WebsiteVerifier, cap_pending

logger = logging.getLogger("vendor_discovery")

STACK_EXCERPT_CHARS = 500

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class RunLog:
    """Collects a run's step trace and mirrors each entry to the logger."""

    def __init__(self, job: DiscoveryJob, run_id: str):
        self.entries: List[DiscoveryLogEntry] = []
        self._context = {
            "job_id": job.id,
            "run_id": run_id,
            "area": job.area,
            "specialty": job.specialty,
        }

    def _emit(self, level: str, message: str, event: str, data: Dict[str, Any]):
        self.entries.append(DiscoveryLogEntry(level=level, message=message, data=data or None))
        logger.log(_LEVELS[level], message, extra={"event": event, **self._context, **data})

    def debug(self, message: str, event: str, **data):
        self._emit("debug", message, event, data)

    def info(self, message: str, event: str, **data):
        self._emit("info", message, event, data)

    def warn(self, message: str, event: str, **data):
        self._emit("warn", message, event, data)

    def error(self, message: str, event: str, **data):
        self._emit("error", message, event, data)


class DiscoveryPipeline:
    def __init__(
        self,
        storage: DiscoveryStorage,
        provider: DiscoveryProvider,
        verifier: Optional[WebsiteVerifier] = None,
        clock: Optional[ReferenceClock] = None,
        conversations: Optional[ConversationStore] = None,
    ):
        self._storage = storage
        self._provider = provider
        self._verifier = verifier or WebsiteVerifier()
        self._clock = clock or ReferenceClock()
        self._conversations = conversations or ConversationStore(storage)

    async def execute_job(
        self,
        job: DiscoveryJob,
        daily_cap: int,
        triggered_by: RunTrigger = RunTrigger.SCHEDULER,
        run_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DiscoveryResult:
        """
        Run one discovery attempt for `job`.

        If `run_id` is given (a run the scheduler queued) that record is moved
        to running, otherwise a new running record is created.
        """
        run_date = self._clock.today()
        run_id = await self._start_run(job, run_date, triggered_by, run_id)
        log = RunLog(job, run_id)
        token = cancel_token or CancellationToken()

        try:
            token.raise_if_cancelled()

            # ── Step 1: validity ─────────────────────────────────────────────
            log.info(
                "Step 1/8: Checking job validity",
                "discovery_step_validity",
                is_active=job.is_active,
                total_discovered=job.total_discovered,
                max_total=job.max_total,
                count_per_run=job.count_per_run,
                end_date=job.end_date.isoformat() if job.end_date else None,
                triggered_by=RunTrigger(triggered_by).value,
            )

            if job.end_date and self._clock.is_past(job.end_date):
                log.warn(
                    "Step 1/8: STOPPED - job past end date, deactivating",
                    "discovery_job_expired",
                    end_date=job.end_date.isoformat(),
                )
                await self._storage.update_job(job.id, {"is_active": False})
                return await self._finish(run_id, RunStatus.SKIPPED, log)

            if job.max_total is not None and job.total_discovered >= job.max_total:
                log.warn(
                    "Step 1/8: STOPPED - job reached max_total, deactivating",
                    "discovery_job_exhausted",
                    total_discovered=job.total_discovered,
                    max_total=job.max_total,
                )
                await self._storage.update_job(job.id, {"is_active": False})
                return await self._finish(run_id, RunStatus.SKIPPED, log)

            # ── Step 2: quota arithmetic ─────────────────────────────────────
            today_count = await self._storage.count_staged_on(run_date)
            if job.max_total is not None:
                remaining_for_job = job.max_total - job.total_discovered
            else:
                remaining_for_job = job.count_per_run
            global_budget = daily_cap - today_count
            count_to_fetch = min(job.count_per_run, remaining_for_job, global_budget)

            log.info(
                "Step 2/8: Calculated fetch count",
                "discovery_step_quota",
                count_per_run=job.count_per_run,
                remaining_for_job=remaining_for_job,
                today_count=today_count,
                daily_cap=daily_cap,
                global_budget_remaining=global_budget,
                count_to_fetch=count_to_fetch,
            )

            if count_to_fetch <= 0:
                log.warn("Step 2/8: STOPPED - no capacity left", "discovery_no_capacity")
                return await self._finish(run_id, RunStatus.SKIPPED, log)

            # ── Step 3: exclusion list ───────────────────────────────────────
            load_start = time.time()
            staged_vendors, onboarded = await asyncio.gather(
                self._storage.get_staged_vendors_by_job(job.id),
                self._storage.get_vendor_name_id_map(),
            )

            staged_by_name: Dict[str, str] = {}
            for vendor in staged_vendors:
                staged_by_name.setdefault(normalize_vendor_name(vendor.name), vendor.id)
            onboarded_by_name = {
                normalize_vendor_name(name): vendor_id for name, vendor_id in onboarded.items()
            }
            exclude_names = build_exclusion_list(staged_by_name, onboarded_by_name)

            log.info(
                "Step 3/8: Built exclusion list",
                "discovery_step_exclusions",
                staged_names=len(staged_by_name),
                onboarded_names=len(onboarded_by_name),
                exclusion_size=len(exclude_names),
                exclusion_cap=MAX_EXCLUDE_NAMES,
                duration_ms=round((time.time() - load_start) * 1000, 2),
            )

            # ── Step 4: conversation ─────────────────────────────────────────
            conversation = await self._conversations.load(job.area, job.specialty)
            if conversation.dropped_turns:
                log.warn(
                    "Step 4/8: Discarded invalid conversation turns",
                    "discovery_conversation_invalid_turns",
                    valid_turns=len(conversation.history),
                    dropped_turns=conversation.dropped_turns,
                )
            log.info(
                "Step 4/8: Resuming conversation" if conversation.history else "Step 4/8: Starting fresh conversation",
                "discovery_step_conversation",
                prior_turns=len(conversation.history),
                prior_vendors_found=conversation.total_vendors_found,
            )

            token.raise_if_cancelled()

            # ── Step 5: provider call ────────────────────────────────────────
            log.info(
                f"Step 5/8: Asking provider for {count_to_fetch} vendors",
                "discovery_step_provider",
                count_to_fetch=count_to_fetch,
                exclusion_size=len(exclude_names),
            )
            provider_start = time.time()
            outcome = await token.run(
                self._provider.discover(
                    job.area,
                    job.specialty,
                    count_to_fetch,
                    exclude_names,
                    conversation.history,
                )
            )
            returned = len(outcome.vendors)

            log.info(
                f"Step 5/8: Provider returned {returned} vendor(s)",
                "discovery_provider_returned",
                returned=returned,
                vendor_names=[v.name for v in outcome.vendors],
                history_turns=len(outcome.conversation),
                duration_ms=round((time.time() - provider_start) * 1000, 2),
            )
            if returned > count_to_fetch:
                log.warn(
                    "Step 5/8: Provider over-delivered",
                    "discovery_provider_overflow",
                    returned=returned,
                    requested=count_to_fetch,
                )

            token.raise_if_cancelled()

            if not outcome.vendors:
                log.warn("Step 5/8: Provider returned no vendors, saving conversation", "discovery_provider_empty")
                await self._save_conversation(
                    job, outcome.conversation, conversation.total_vendors_found, log, "Step 5/8"
                )
                return await self._finish(run_id, RunStatus.COMPLETED, log)

            # ── Step 6: safety-net dedup + staging ───────────────────────────
            classification = classify_candidates(
                outcome.vendors, staged_by_name, onboarded_by_name, limit=count_to_fetch
            )
            total = len(classification.decisions)
            for index, decision in enumerate(classification.decisions, start=1):
                name = decision.candidate.name
                if decision.action == "skip":
                    log.debug(
                        f"[{index}/{total}] \"{name}\" skipped, already staged for this job",
                        "discovery_candidate_skipped",
                        vendor_name=name,
                        staged_id=decision.matched_id,
                    )
                    continue

                duplicate_of = decision.matched_id if decision.action == "duplicate" else None
                await self._storage.create_staged_vendor(
                    StagedVendor.from_candidate(job.id, decision.candidate, duplicate_of)
                )
                if duplicate_of:
                    log.debug(
                        f"[{index}/{total}] \"{name}\" staged as duplicate of onboarded vendor {duplicate_of}",
                        "discovery_candidate_duplicate",
                        vendor_name=name,
                        duplicate_of_vendor_id=duplicate_of,
                    )
                else:
                    log.debug(
                        f"[{index}/{total}] \"{name}\" staged",
                        "discovery_candidate_staged",
                        vendor_name=name,
                    )

            new_count = len(classification.to_stage)
            log.info(
                "Step 6/8: Safety check complete",
                "discovery_step_dedup",
                candidates=total,
                staged_new=new_count,
                skipped_already_staged=classification.skipped_same_job,
                marked_duplicate=classification.onboarded_duplicates,
            )
            if classification.over_limit:
                log.warn(
                    f"Step 6/8: {classification.over_limit} new candidate(s) over the fetch count left unstaged",
                    "discovery_candidates_over_limit",
                    over_limit=classification.over_limit,
                    count_to_fetch=count_to_fetch,
                )

            # ── Step 7: website verification ─────────────────────────────────
            await self._verify_websites(job, log, token)

            # ── Step 8: bookkeeping ──────────────────────────────────────────
            new_total = job.total_discovered + new_count
            await self._storage.update_job(job.id, {
                "total_discovered": new_total,
                "last_run_at": datetime.now(timezone.utc),
            })
            log.info(
                "Step 8/8: Job counters updated",
                "discovery_step_bookkeeping",
                total_discovered_before=job.total_discovered,
                total_discovered_after=new_total,
            )
            await self._save_conversation(
                job,
                outcome.conversation,
                conversation.total_vendors_found + new_count,
                log,
                "Step 8/8",
            )

            log.info(
                "JOB COMPLETE",
                "discovery_run_complete",
                returned=returned,
                staged=new_count,
                duplicates_found=classification.duplicates_found,
            )
            return await self._finish(
                run_id,
                RunStatus.COMPLETED,
                log,
                discovered=returned,
                staged=new_count,
                duplicates_found=classification.duplicates_found,
            )

        except RunCancelled as e:
            log.warn("Run was cancelled", "discovery_run_cancelled", reason=e.reason)
            return await self._finish(run_id, RunStatus.CANCELLED, log, error=e.reason)

        except Exception as e:
            message = str(e) or type(e).__name__
            log.error(
                f"FAILED during processing: {message}",
                "discovery_run_failed",
                error=message,
                stack=traceback.format_exc()[:STACK_EXCERPT_CHARS],
            )
            return await self._finish(run_id, RunStatus.FAILED, log, error=message)

    # ── Internals ────────────────────────────────────────────────────────────

    async def _start_run(
        self,
        job: DiscoveryJob,
        run_date: str,
        triggered_by: RunTrigger,
        run_id: Optional[str],
    ) -> str:
        if run_id:
            await self._storage.update_run(run_id, {"status": RunStatus.RUNNING})
            return run_id
        run = await self._storage.create_run(DiscoveryRun(
            job_id=job.id,
            run_date=run_date,
            status=RunStatus.RUNNING,
            triggered_by=triggered_by,
        ))
        return run.id

    async def _finish(
        self,
        run_id: str,
        status: RunStatus,
        log: RunLog,
        discovered: int = 0,
        staged: int = 0,
        duplicates_found: int = 0,
        error: Optional[str] = None,
    ) -> DiscoveryResult:
        applied = await self._storage.finish_run(run_id, {
            "vendors_discovered": discovered,
            "vendors_staged": staged,
            "duplicates_found": duplicates_found,
            "status": status,
            "error": error,
            "finished_at": datetime.now(timezone.utc),
        })
        if not applied:
            # Already finished elsewhere, e.g. an orphan cancel from the admin API
            stored = await self._storage.get_run(run_id)
            log.warn(
                "Run was already finished, outcome not recorded",
                "discovery_run_already_finished",
                attempted_status=status,
                stored_status=stored.status if stored else None,
            )
            if stored is not None:
                status = stored.status
        return DiscoveryResult(
            run_id=run_id,
            status=status,
            discovered=discovered,
            staged=staged,
            duplicates_found=duplicates_found,
            logs=log.entries,
        )

    async def _verify_websites(self, job: DiscoveryJob, log: RunLog, token: CancellationToken):
        """Verify this job's pending websites. Never raises."""
        try:
            vendors = await self._storage.get_staged_vendors_by_job(job.id)
            pending = [v for v in vendors if v.website_verified == WebsiteVerification.PENDING]
            if not pending:
                log.info("Step 7/8: No websites pending verification", "discovery_verify_none")
                return

            batch, deferred = cap_pending(pending, VERIFY_MAX_PER_RUN)
            if deferred:
                log.info(
                    f"Step 7/8: Verification capped at {VERIFY_MAX_PER_RUN} vendors",
                    "discovery_verify_capped",
                    pending=len(pending),
                    deferred=deferred,
                )

            async def record(vendor_id: str, result: WebsiteVerification):
                await self._storage.update_staged_vendor(vendor_id, {"website_verified": result})

            summary = await self._verifier.verify_batch(
                [(v.id, v.website) for v in batch],
                record,
                cancel_token=token,
            )
            summary.deferred += deferred
            log.info(
                "Step 7/8: Website verification complete",
                "discovery_step_verify",
                **summary.as_dict(),
            )
        except Exception as e:
            log.error(
                f"Step 7/8: Website verification failed (non-fatal): {e}",
                "discovery_verify_failed",
                error=str(e),
            )

    async def _save_conversation(
        self,
        job: DiscoveryJob,
        history: List[ConversationTurn],
        total_vendors_found: int,
        log: RunLog,
        step: str,
    ):
        """Persist the updated conversation. Never raises."""
        try:
            await self._conversations.save(job.area, job.specialty, history, total_vendors_found)
            log.info(
                f"{step}: Conversation saved",
                "discovery_conversation_saved",
                history_turns=len(history),
                total_vendors_found=total_vendors_found,
            )
        except Exception as e:
            log.error(
                f"{step}: Failed to save conversation (non-fatal): {e}",
                "discovery_conversation_save_failed",
                error=str(e),
            )
