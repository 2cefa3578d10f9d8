"""
Discovery storage - persistence interface for jobs, runs, staged vendors,
conversations and scheduler config, plus the MongoDB implementation.

The pipeline and scheduler only depend on the DiscoveryStorage protocol so
they can be exercised with an in-memory fake.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId

from models.discovery import DiscoveryJob, DiscoveryRun, RunStatus, SchedulerConfig
from models.vendor import StagedVendor
from services.vendor_dedup import normalize_vendor_name

logger = logging.getLogger("vendor_discovery")

SCHEDULER_CONFIG_KEY = "vendor_discovery"
ACTIVE_RUN_STATUSES = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)


class DiscoveryStorage(Protocol):
    # Jobs
    async def create_job(self, job: DiscoveryJob) -> DiscoveryJob: ...
    async def get_job(self, job_id: str) -> Optional[DiscoveryJob]: ...
    async def list_jobs(self) -> List[DiscoveryJob]: ...
    async def get_active_jobs(self) -> List[DiscoveryJob]: ...
    async def update_job(self, job_id: str, updates: Dict[str, Any]) -> Optional[DiscoveryJob]: ...

    # Runs
    async def create_run(self, run: DiscoveryRun) -> DiscoveryRun: ...
    async def get_run(self, run_id: str) -> Optional[DiscoveryRun]: ...
    async def update_run(self, run_id: str, updates: Dict[str, Any]) -> Optional[DiscoveryRun]: ...
    async def finish_run(self, run_id: str, updates: Dict[str, Any]) -> bool: ...
    async def list_runs(
        self, job_id: Optional[str] = None, run_date: Optional[str] = None, limit: int = 100
    ) -> List[DiscoveryRun]: ...
    async def count_staged_on(self, run_date: str) -> int: ...

    # Staged vendors
    async def create_staged_vendor(self, vendor: StagedVendor) -> StagedVendor: ...
    async def update_staged_vendor(self, vendor_id: str, updates: Dict[str, Any]) -> None: ...
    async def get_staged_vendors_by_job(self, job_id: str) -> List[StagedVendor]: ...
    async def list_staged_vendors(
        self, status: Optional[str] = None, job_id: Optional[str] = None
    ) -> List[StagedVendor]: ...

    # Onboarded vendors (read-only)
    async def get_vendor_name_id_map(self) -> Dict[str, str]: ...

    # Conversations (raw documents; validation happens in ConversationStore)
    async def get_conversation(self, area: str, specialty: str) -> Optional[Dict[str, Any]]: ...
    async def upsert_conversation(
        self, area: str, specialty: str, history: List[Dict[str, Any]], total_vendors_found: int
    ) -> None: ...
    async def delete_conversation(self, area: str, specialty: str) -> bool: ...

    # Scheduler config
    async def get_scheduler_config(self) -> Optional[SchedulerConfig]: ...
    async def save_scheduler_config(self, config: SchedulerConfig) -> None: ...


def _oid(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _encode(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Make an update dict BSON-friendly (enums stored by value)."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in updates.items()
    }


def _to_document(model) -> Dict[str, Any]:
    return _encode(model.model_dump(exclude={"id"}))


class MongoDiscoveryStorage:
    """DiscoveryStorage backed by motor collections."""

    def __init__(self, db=None):
        self._db = db  # MongoDB database instance (injected for testability)

    def _collection(self, name: str):
        """Get a collection, using injected db or falling back to global."""
        if self._db is not None:
            return self._db[name]
        from database import get_database
        return get_database()[name]

    # ── Jobs ─────────────────────────────────────────────────────────────────

    async def create_job(self, job: DiscoveryJob) -> DiscoveryJob:
        result = await self._collection("discovery_jobs").insert_one(_to_document(job))
        return job.model_copy(update={"id": str(result.inserted_id)})

    async def get_job(self, job_id: str) -> Optional[DiscoveryJob]:
        oid = _oid(job_id)
        if oid is None:
            return None
        doc = await self._collection("discovery_jobs").find_one({"_id": oid})
        return DiscoveryJob(**doc) if doc else None

    async def list_jobs(self) -> List[DiscoveryJob]:
        cursor = self._collection("discovery_jobs").find({}).sort("created_at", 1)
        return [DiscoveryJob(**doc) async for doc in cursor]

    async def get_active_jobs(self) -> List[DiscoveryJob]:
        cursor = self._collection("discovery_jobs").find({
            "is_active": True,
            "paused": {"$ne": True},
            "retired": {"$ne": True},
        }).sort("created_at", 1)
        return [DiscoveryJob(**doc) async for doc in cursor]

    async def update_job(self, job_id: str, updates: Dict[str, Any]) -> Optional[DiscoveryJob]:
        oid = _oid(job_id)
        if oid is None:
            return None
        collection = self._collection("discovery_jobs")
        if updates:
            await collection.update_one({"_id": oid}, {"$set": _encode(updates)})
        doc = await collection.find_one({"_id": oid})
        return DiscoveryJob(**doc) if doc else None

    # ── Runs ─────────────────────────────────────────────────────────────────

    async def create_run(self, run: DiscoveryRun) -> DiscoveryRun:
        result = await self._collection("discovery_runs").insert_one(_to_document(run))
        return run.model_copy(update={"id": str(result.inserted_id)})

    async def get_run(self, run_id: str) -> Optional[DiscoveryRun]:
        oid = _oid(run_id)
        if oid is None:
            return None
        doc = await self._collection("discovery_runs").find_one({"_id": oid})
        return DiscoveryRun(**doc) if doc else None

    async def update_run(self, run_id: str, updates: Dict[str, Any]) -> Optional[DiscoveryRun]:
        oid = _oid(run_id)
        if oid is None:
            return None
        collection = self._collection("discovery_runs")
        await collection.update_one({"_id": oid}, {"$set": _encode(updates)})
        doc = await collection.find_one({"_id": oid})
        return DiscoveryRun(**doc) if doc else None

    async def finish_run(self, run_id: str, updates: Dict[str, Any]) -> bool:
        """
        Apply a terminal update only while the run is still queued or running.

        Returns False when another writer already finished the run.
        """
        oid = _oid(run_id)
        if oid is None:
            return False
        result = await self._collection("discovery_runs").update_one(
            {"_id": oid, "status": {"$in": list(ACTIVE_RUN_STATUSES)}},
            {"$set": _encode(updates)},
        )
        return result.matched_count == 1

    async def list_runs(
        self, job_id: Optional[str] = None, run_date: Optional[str] = None, limit: int = 100
    ) -> List[DiscoveryRun]:
        query: Dict[str, Any] = {}
        if job_id:
            query["job_id"] = job_id
        if run_date:
            query["run_date"] = run_date
        cursor = self._collection("discovery_runs").find(query).sort("created_at", -1).limit(limit)
        return [DiscoveryRun(**doc) async for doc in cursor]

    async def count_staged_on(self, run_date: str) -> int:
        pipeline = [
            {"$match": {"run_date": run_date}},
            {"$group": {"_id": None, "total": {"$sum": "$vendors_staged"}}},
        ]
        async for doc in self._collection("discovery_runs").aggregate(pipeline):
            return int(doc.get("total") or 0)
        return 0

    # ── Staged vendors ───────────────────────────────────────────────────────

    async def create_staged_vendor(self, vendor: StagedVendor) -> StagedVendor:
        result = await self._collection("staged_vendors").insert_one(_to_document(vendor))
        return vendor.model_copy(update={"id": str(result.inserted_id)})

    async def update_staged_vendor(self, vendor_id: str, updates: Dict[str, Any]) -> None:
        oid = _oid(vendor_id)
        if oid is None:
            return
        await self._collection("staged_vendors").update_one(
            {"_id": oid}, {"$set": _encode(updates)}
        )

    async def get_staged_vendors_by_job(self, job_id: str) -> List[StagedVendor]:
        cursor = self._collection("staged_vendors").find({"discovery_job_id": job_id})
        return [StagedVendor(**doc) async for doc in cursor]

    async def list_staged_vendors(
        self, status: Optional[str] = None, job_id: Optional[str] = None
    ) -> List[StagedVendor]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if job_id:
            query["discovery_job_id"] = job_id
        cursor = self._collection("staged_vendors").find(query).sort("created_at", -1)
        return [StagedVendor(**doc) async for doc in cursor]

    # ── Onboarded vendors ────────────────────────────────────────────────────

    async def get_vendor_name_id_map(self) -> Dict[str, str]:
        """Normalized name -> vendor id for every onboarded vendor."""
        names: Dict[str, str] = {}
        async for doc in self._collection("vendors").find({}, {"name": 1}):
            name = normalize_vendor_name(doc.get("name"))
            if name and name not in names:
                names[name] = str(doc["_id"])
        return names

    # ── Conversations ────────────────────────────────────────────────────────

    async def get_conversation(self, area: str, specialty: str) -> Optional[Dict[str, Any]]:
        return await self._collection("discovery_conversations").find_one(
            {"area": area, "specialty": specialty}
        )

    async def upsert_conversation(
        self, area: str, specialty: str, history: List[Dict[str, Any]], total_vendors_found: int
    ) -> None:
        await self._collection("discovery_conversations").update_one(
            {"area": area, "specialty": specialty},
            {"$set": {
                "history": history,
                "total_vendors_found": total_vendors_found,
                "updated_at": datetime.now(timezone.utc),
            }},
            upsert=True,
        )

    async def delete_conversation(self, area: str, specialty: str) -> bool:
        result = await self._collection("discovery_conversations").delete_one(
            {"area": area, "specialty": specialty}
        )
        return result.deleted_count > 0

    # ── Scheduler config ─────────────────────────────────────────────────────

    async def get_scheduler_config(self) -> Optional[SchedulerConfig]:
        doc = await self._collection("scheduler_config").find_one({"_id": SCHEDULER_CONFIG_KEY})
        if not doc:
            return None
        return SchedulerConfig(run_hour=doc["run_hour"], daily_cap=doc["daily_cap"])

    async def save_scheduler_config(self, config: SchedulerConfig) -> None:
        await self._collection("scheduler_config").update_one(
            {"_id": SCHEDULER_CONFIG_KEY},
            {"$set": {**config.model_dump(), "updated_at": datetime.now(timezone.utc)}},
            upsert=True,
        )
        logger.info(
            "Scheduler config saved",
            extra={"event": "scheduler_config_saved", **config.model_dump()},
        )
