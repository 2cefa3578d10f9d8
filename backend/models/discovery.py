"""
Discovery models - Jobs, runs, scheduler configuration and the request
schemas used by the admin routes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from models.vendor import PyObjectId


class RunStatus(str, Enum):
    """Lifecycle status of a discovery run."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.SKIPPED,
})


class RunTrigger(str, Enum):
    """What started a run."""
    SCHEDULER = "scheduler"
    MANUAL = "manual"


class DiscoveryJob(BaseModel):
    """
    A persistent (area, specialty) discovery target with its own lifetime quota.

    total_discovered only grows. Jobs are deactivated, never deleted, once
    max_total is reached or end_date has passed.
    """
    id: Optional[PyObjectId] = Field(default=None, alias="_id")
    area: str = Field(..., min_length=1)
    specialty: str = Field(..., min_length=1)
    count_per_run: int = Field(default=20, ge=1, description="Vendors requested per attempt")
    max_total: Optional[int] = Field(default=None, ge=1, description="Lifetime cap, None for uncapped")
    total_discovered: int = Field(default=0, ge=0)
    is_active: bool = True
    paused: bool = False
    retired: bool = False
    end_date: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {
        "populate_by_name": True,
    }

    @property
    def is_runnable(self) -> bool:
        return self.is_active and not self.paused and not self.retired


class DiscoveryRun(BaseModel):
    """One execution attempt of a job's pipeline."""
    id: Optional[PyObjectId] = Field(default=None, alias="_id")
    job_id: str
    run_date: str = Field(..., description="Calendar day (YYYY-MM-DD) in the reference timezone")
    vendors_discovered: int = 0
    vendors_staged: int = 0
    duplicates_found: int = 0
    status: RunStatus = RunStatus.QUEUED
    triggered_by: RunTrigger = RunTrigger.SCHEDULER
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    model_config = {
        "populate_by_name": True,
        "use_enum_values": True,
    }

    @property
    def is_successful(self) -> bool:
        """A completed run that actually staged something."""
        return self.status == RunStatus.COMPLETED and self.vendors_staged > 0


class SchedulerConfig(BaseModel):
    """Singleton scheduler settings."""
    run_hour: int = Field(..., ge=0, le=23, description="Hour of day in the reference timezone")
    daily_cap: int = Field(..., ge=1, description="Max vendors staged per day across all jobs")

    @classmethod
    def clamped(cls, run_hour: int, daily_cap: int) -> "SchedulerConfig":
        return cls(run_hour=min(23, max(0, int(run_hour))), daily_cap=max(1, int(daily_cap)))


class DiscoveryLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    level: Literal["debug", "info", "warn", "error"]
    message: str
    data: Optional[Dict[str, Any]] = None


class DiscoveryResult(BaseModel):
    """Summary returned by one pipeline execution."""
    run_id: str
    status: RunStatus
    discovered: int = 0
    staged: int = 0
    duplicates_found: int = 0
    logs: List[DiscoveryLogEntry] = Field(default_factory=list)

    model_config = {
        "use_enum_values": True,
    }


# ── Admin request / response schemas ────────────────────────────────────────


class DiscoveryJobCreate(BaseModel):
    """Request body for creating a discovery job."""
    area: str = Field(..., min_length=1)
    specialty: str = Field(..., min_length=1)
    count_per_run: int = Field(default=20, ge=1, le=50)
    max_total: Optional[int] = Field(default=None, ge=1)
    end_date: Optional[datetime] = None
    notes: Optional[str] = None


class DiscoveryJobUpdate(BaseModel):
    """Editable job fields. Unset fields are left untouched."""
    area: Optional[str] = Field(default=None, min_length=1)
    specialty: Optional[str] = Field(default=None, min_length=1)
    count_per_run: Optional[int] = Field(default=None, ge=1, le=50)
    max_total: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    paused: Optional[bool] = None
    end_date: Optional[datetime] = None
    notes: Optional[str] = None


class BulkJobCreateRequest(BaseModel):
    """Create one job per (area, specialty) pair."""
    areas: List[str] = Field(..., min_length=1)
    specialties: List[str] = Field(..., min_length=1)
    count_per_run: int = Field(default=20, ge=1, le=50)
    max_total: int = Field(default=100, ge=1)
    notes: Optional[str] = None
    skip_existing: bool = True


class BulkJobResult(BaseModel):
    area: str
    specialty: str
    status: Literal["created", "skipped_existing", "error"]
    id: Optional[str] = None
    error: Optional[str] = None


class SchedulerConfigUpdate(BaseModel):
    run_hour: Optional[int] = None
    daily_cap: Optional[int] = None


class ManualRunResponse(BaseModel):
    run_id: str
    status: RunStatus = RunStatus.QUEUED
    message: str = "Discovery run started in background"
