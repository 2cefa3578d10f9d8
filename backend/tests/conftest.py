"""
Shared test fixtures for the vendor discovery backend tests.

Provides:
- memory_storage: An in-memory DiscoveryStorage (no database required)
- fixed_clock: A ReferenceClock pinned to 2026-02-08 02:30 America/Los_Angeles
- make_pipeline: Factory for a DiscoveryPipeline with a mocked provider/verifier
- test_db: A clean MongoDB test database (skipped when MONGO_URI is unset)
- client: An async httpx test client wired to the FastAPI app with memory storage
"""

import itertools
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import certifi
import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from motor.motor_asyncio import AsyncIOMotorClient

from models.discovery import DiscoveryJob, DiscoveryRun, RunStatus, SchedulerConfig
from models.vendor import StagedVendor
from services.clock import ReferenceClock
from services.conversation_store import ConversationStore
from services.discovery_pipeline import DiscoveryPipeline
from services.discovery_provider import DiscoveryOutcome, GeminiDiscoveryProvider
from services.scheduler import JobScheduler
from services.vendor_dedup import normalize_vendor_name
from services.website_verifier import VerificationSummary, WebsiteVerifier

# Load .env so MONGO_URI is available
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

MONGO_URI = os.getenv("MONGO_URI")
TEST_DB_NAME = "vendor_discovery_test"

# 02:30 in Los Angeles (PST, UTC-8) on 2026-02-08
FIXED_NOW = datetime(2026, 2, 8, 10, 30, tzinfo=timezone.utc)
FIXED_TODAY = "2026-02-08"


class InMemoryDiscoveryStorage:
    """DiscoveryStorage kept in plain dicts."""

    def __init__(self):
        self.jobs: Dict[str, DiscoveryJob] = {}
        self.runs: Dict[str, DiscoveryRun] = {}
        self.staged: Dict[str, StagedVendor] = {}
        self.vendors: Dict[str, str] = {}
        self.conversations: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.scheduler_config: Optional[SchedulerConfig] = None
        self._ids = itertools.count(1)

    def _next_id(self) -> str:
        return f"{next(self._ids):024x}"

    @staticmethod
    def _apply(model, updates: Dict[str, Any]):
        return type(model).model_validate({**model.model_dump(), **updates})

    # Jobs

    async def create_job(self, job: DiscoveryJob) -> DiscoveryJob:
        job = job.model_copy(update={"id": self._next_id()})
        self.jobs[job.id] = job
        return job

    async def get_job(self, job_id: str) -> Optional[DiscoveryJob]:
        return self.jobs.get(job_id)

    async def list_jobs(self) -> List[DiscoveryJob]:
        return list(self.jobs.values())

    async def get_active_jobs(self) -> List[DiscoveryJob]:
        return [job for job in self.jobs.values() if job.is_runnable]

    async def update_job(self, job_id: str, updates: Dict[str, Any]) -> Optional[DiscoveryJob]:
        job = self.jobs.get(job_id)
        if job is None:
            return None
        self.jobs[job_id] = self._apply(job, updates)
        return self.jobs[job_id]

    # Runs

    async def create_run(self, run: DiscoveryRun) -> DiscoveryRun:
        run = run.model_copy(update={"id": self._next_id()})
        self.runs[run.id] = run
        return run

    async def get_run(self, run_id: str) -> Optional[DiscoveryRun]:
        return self.runs.get(run_id)

    async def update_run(self, run_id: str, updates: Dict[str, Any]) -> Optional[DiscoveryRun]:
        run = self.runs.get(run_id)
        if run is None:
            return None
        self.runs[run_id] = self._apply(run, updates)
        return self.runs[run_id]

    async def finish_run(self, run_id: str, updates: Dict[str, Any]) -> bool:
        run = self.runs.get(run_id)
        if run is None or run.status not in (RunStatus.QUEUED, RunStatus.RUNNING):
            return False
        self.runs[run_id] = self._apply(run, updates)
        return True

    async def list_runs(
        self, job_id: Optional[str] = None, run_date: Optional[str] = None, limit: int = 100
    ) -> List[DiscoveryRun]:
        runs = [
            run for run in self.runs.values()
            if (job_id is None or run.job_id == job_id)
            and (run_date is None or run.run_date == run_date)
        ]
        return list(reversed(runs))[:limit]

    async def count_staged_on(self, run_date: str) -> int:
        return sum(run.vendors_staged for run in self.runs.values() if run.run_date == run_date)

    # Staged vendors

    async def create_staged_vendor(self, vendor: StagedVendor) -> StagedVendor:
        vendor = vendor.model_copy(update={"id": self._next_id()})
        self.staged[vendor.id] = vendor
        return vendor

    async def update_staged_vendor(self, vendor_id: str, updates: Dict[str, Any]) -> None:
        vendor = self.staged.get(vendor_id)
        if vendor is not None:
            self.staged[vendor_id] = self._apply(vendor, updates)

    async def get_staged_vendors_by_job(self, job_id: str) -> List[StagedVendor]:
        return [v for v in self.staged.values() if v.discovery_job_id == job_id]

    async def list_staged_vendors(
        self, status: Optional[str] = None, job_id: Optional[str] = None
    ) -> List[StagedVendor]:
        return [
            v for v in self.staged.values()
            if (status is None or v.status == status)
            and (job_id is None or v.discovery_job_id == job_id)
        ]

    # Onboarded vendors

    def add_vendor(self, name: str) -> str:
        vendor_id = self._next_id()
        self.vendors[vendor_id] = name
        return vendor_id

    async def get_vendor_name_id_map(self) -> Dict[str, str]:
        names: Dict[str, str] = {}
        for vendor_id, name in self.vendors.items():
            names.setdefault(normalize_vendor_name(name), vendor_id)
        return names

    # Conversations

    async def get_conversation(self, area: str, specialty: str) -> Optional[Dict[str, Any]]:
        record = self.conversations.get((area, specialty))
        return dict(record) if record else None

    async def upsert_conversation(
        self, area: str, specialty: str, history: List[Dict[str, Any]], total_vendors_found: int
    ) -> None:
        self.conversations[(area, specialty)] = {
            "area": area,
            "specialty": specialty,
            "history": history,
            "total_vendors_found": total_vendors_found,
        }

    async def delete_conversation(self, area: str, specialty: str) -> bool:
        return self.conversations.pop((area, specialty), None) is not None

    # Scheduler config

    async def get_scheduler_config(self) -> Optional[SchedulerConfig]:
        return self.scheduler_config

    async def save_scheduler_config(self, config: SchedulerConfig) -> None:
        self.scheduler_config = config


@pytest.fixture
def memory_storage():
    return InMemoryDiscoveryStorage()


@pytest.fixture
def fixed_clock():
    return ReferenceClock("America/Los_Angeles", now_fn=lambda: FIXED_NOW)


@pytest.fixture
def make_pipeline(memory_storage, fixed_clock):
    """Build a DiscoveryPipeline around memory_storage.

    The provider returns `outcome` (or raises `provider_error`); the
    verifier records `verification` for every vendor it is given.
    """

    def _make(outcome=None, provider_error=None, verification="valid", verifier=None):
        provider = MagicMock(spec=GeminiDiscoveryProvider)
        if provider_error is not None:
            provider.discover = AsyncMock(side_effect=provider_error)
        else:
            provider.discover = AsyncMock(return_value=outcome or DiscoveryOutcome())

        if verifier is None:
            verifier = MagicMock(spec=WebsiteVerifier)

            async def verify_batch(vendors, record, cancel_token=None):
                for vendor_id, _url in vendors:
                    await record(vendor_id, verification)
                return VerificationSummary(verified=len(vendors))

            verifier.verify_batch = AsyncMock(side_effect=verify_batch)

        pipeline = DiscoveryPipeline(
            storage=memory_storage,
            provider=provider,
            verifier=verifier,
            clock=fixed_clock,
            conversations=ConversationStore(memory_storage),
        )
        return pipeline, provider, verifier

    return _make


@pytest_asyncio.fixture
async def test_db():
    """Create a test database that gets cleaned up after each test."""
    if not MONGO_URI:
        pytest.skip("MONGO_URI not set")

    mongo_client = AsyncIOMotorClient(MONGO_URI, tlsCAFile=certifi.where())
    db = mongo_client[TEST_DB_NAME]

    yield db

    # Clean up: drop the test database after each test
    await mongo_client.drop_database(TEST_DB_NAME)
    mongo_client.close()


@pytest_asyncio.fixture
async def client(memory_storage, make_pipeline, fixed_clock):
    """Async test client with in-memory storage injected.

    Sets app.state directly and skips the production lifespan, so no
    database or Gemini key is needed.
    """
    from main import app

    pipeline, _provider, _verifier = make_pipeline()
    scheduler = JobScheduler(
        memory_storage,
        pipeline,
        fixed_clock,
        default_config=SchedulerConfig(run_hour=2, daily_cap=50),
    )
    app.state.storage = memory_storage
    app.state.conversations = ConversationStore(memory_storage)
    app.state.scheduler = scheduler

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await scheduler.stop(cancel_active=True)
    await scheduler.join()
    for name in ("storage", "conversations", "scheduler"):
        delattr(app.state, name)
