"""
Job administration - create, bulk create, edit and retire discovery jobs.
"""

import logging
from typing import Any, Dict, List, Optional

from models.discovery import (
    BulkJobCreateRequest,
    BulkJobResult,
    DiscoveryJob,
    DiscoveryJobCreate,
    DiscoveryJobUpdate,
)
from services.storage import DiscoveryStorage

logger = logging.getLogger("vendor_discovery")


async def create_job(storage: DiscoveryStorage, payload: DiscoveryJobCreate) -> DiscoveryJob:
    job = await storage.create_job(DiscoveryJob(**payload.model_dump()))
    logger.info(
        "Discovery job created",
        extra={"event": "job_created", "job_id": job.id, "area": job.area, "specialty": job.specialty},
    )
    return job


async def bulk_create_jobs(storage: DiscoveryStorage, request: BulkJobCreateRequest) -> Dict[str, Any]:
    """
    Create one job per (area, specialty) pair.

    Pairs that already have a job are reported as skipped_existing when
    skip_existing is set. A failure on one pair is reported and does not
    stop the others.
    """
    existing = set()
    if request.skip_existing:
        existing = {(job.area, job.specialty) for job in await storage.list_jobs()}

    results: List[BulkJobResult] = []
    for area in request.areas:
        for specialty in request.specialties:
            if (area, specialty) in existing:
                results.append(BulkJobResult(area=area, specialty=specialty, status="skipped_existing"))
                continue
            try:
                job = await storage.create_job(DiscoveryJob(
                    area=area,
                    specialty=specialty,
                    count_per_run=request.count_per_run,
                    max_total=request.max_total,
                    notes=request.notes,
                ))
                existing.add((area, specialty))
                results.append(BulkJobResult(area=area, specialty=specialty, status="created", id=job.id))
            except Exception as e:
                logger.error(
                    "Bulk job creation failed for pair",
                    extra={"event": "job_bulk_pair_error", "area": area, "specialty": specialty, "error": str(e)},
                )
                results.append(BulkJobResult(area=area, specialty=specialty, status="error", error=str(e)))

    summary = {
        "total": len(results),
        "created": sum(1 for r in results if r.status == "created"),
        "skipped": sum(1 for r in results if r.status == "skipped_existing"),
        "errors": sum(1 for r in results if r.status == "error"),
    }
    logger.info("Bulk job creation complete", extra={"event": "job_bulk_complete", **summary})
    return {"summary": summary, "results": results}


async def update_job(
    storage: DiscoveryStorage,
    job_id: str,
    payload: DiscoveryJobUpdate,
) -> Optional[DiscoveryJob]:
    """Apply the fields set on `payload`. Returns None for an unknown job."""
    updates = payload.model_dump(exclude_unset=True)
    if await storage.get_job(job_id) is None:
        return None
    return await storage.update_job(job_id, updates)


async def retire_job(storage: DiscoveryStorage, job_id: str) -> Optional[DiscoveryJob]:
    """Permanently take a job out of rotation while keeping its history."""
    if await storage.get_job(job_id) is None:
        return None
    job = await storage.update_job(job_id, {"retired": True, "is_active": False})
    logger.info("Discovery job retired", extra={"event": "job_retired", "job_id": job_id})
    return job
