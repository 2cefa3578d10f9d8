"""
Cooperative cancellation for discovery runs.

A CancellationToken is handed to the pipeline of a manual run. The
pipeline checks it between steps and races the provider call against it,
so signalling the token aborts the in-flight request. The registry maps
run ids to live tokens for the scheduler's cancel operation.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Dict, List, Optional, TypeVar

logger = logging.getLogger("vendor_discovery")

T = TypeVar("T")

DEFAULT_CANCEL_REASON = "Cancelled by admin"


class RunCancelled(Exception):
    """Raised inside a run once its token has been signalled."""

    def __init__(self, reason: str = DEFAULT_CANCEL_REASON):
        self.reason = reason
        super().__init__(reason)


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self):
        if self.cancelled:
            raise RunCancelled(self.reason or DEFAULT_CANCEL_REASON)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        On cancellation the underlying task is cancelled and RunCancelled
        is raised.
        """
        self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        # Let the aborted call unwind before reporting the cancellation
        await asyncio.gather(task, return_exceptions=True)
        raise RunCancelled(self.reason or DEFAULT_CANCEL_REASON)


@dataclass
class ActiveRun:
    run_id: str
    job_id: str
    token: CancellationToken


class CancellationRegistry:
    """Thread-safe map of run id -> in-flight run handle."""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: Dict[str, ActiveRun] = {}

    def register(self, run_id: str, job_id: str, token: CancellationToken) -> ActiveRun:
        handle = ActiveRun(run_id=run_id, job_id=job_id, token=token)
        with self._lock:
            self._runs[run_id] = handle
        return handle

    def pop(self, run_id: str) -> Optional[ActiveRun]:
        with self._lock:
            return self._runs.pop(run_id, None)

    def get(self, run_id: str) -> Optional[ActiveRun]:
        with self._lock:
            return self._runs.get(run_id)

    def active_run_ids(self) -> List[str]:
        with self._lock:
            return list(self._runs)

    def cancel_all(self, reason: str = DEFAULT_CANCEL_REASON) -> int:
        with self._lock:
            handles = list(self._runs.values())
            self._runs.clear()
        for handle in handles:
            handle.token.cancel(reason)
        return len(handles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
