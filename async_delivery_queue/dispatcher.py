"""Polling worker loop: reclaim, lease, dispatch."""

from __future__ import annotations

import asyncio
import math
import os
import secrets
import socket
import time
from typing import Callable, List, Optional

from .executor import DeliveryExecutor
from .logger import get_logger
from .models import Job, JobStatus
from .persistence import Persistence
from .prometheus import DeliveryMetrics

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_VISIBILITY_TIMEOUT = 300.0


def generate_worker_id() -> str:
    """Return an identifier unique to this process."""
    return f"worker-{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


class Dispatcher:
    """One worker instance. Any number of them may poll the same store.

    Workers never talk to each other: a job belongs to whichever worker's
    conditional ``queued -> sending`` update succeeds first, and a lease older
    than ``visibility_timeout`` is presumed abandoned and put back in the
    queue.
    """

    def __init__(
        self,
        *,
        persistence: Persistence,
        executor: DeliveryExecutor,
        worker_id: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        metrics: Optional[DeliveryMetrics] = None,
        clock: Optional[Callable[[], float]] = None,
        logger=None,
    ):
        if executor.worker_id != worker_id:
            raise ValueError("executor and dispatcher must share the same worker id")
        self.persistence = persistence
        self.executor = executor
        self.worker_id = worker_id
        self.batch_size = max(1, int(batch_size))
        self.poll_interval = max(0.0, float(poll_interval))
        self.visibility_timeout = float(visibility_timeout)
        self.metrics = metrics or executor.metrics
        self.logger = logger or get_logger()
        self._clock = clock or time.time
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ----------------------------------------------------------------- lifecycle
    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"dispatch-loop-{self.worker_id}")
        self.logger.info("Dispatcher %s started (batch_size=%d, poll_interval=%gs)", self.worker_id, self.batch_size, self.poll_interval)

    async def stop(self) -> None:
        """Stop polling. An in-flight batch is allowed to finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self.logger.info("Dispatcher %s stopped", self.worker_id)

    def wake(self) -> None:
        """Skip the current idle wait and poll immediately."""
        self._wake_event.set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------- cycle
    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                processed = await self.run_once()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in dispatch loop: %s", exc)
                processed = 0
            if not processed:
                await self._wait_for_wakeup(self.poll_interval)

    async def run_once(self) -> int:
        """Run one poll cycle and return the number of attempted jobs."""
        await self.reclaim_expired()
        jobs = await self.acquire()
        if jobs:
            results = await asyncio.gather(
                *(self.executor.attempt(job) for job in jobs),
                return_exceptions=True,
            )
            for job, result in zip(jobs, results):
                if isinstance(result, Exception):
                    self.logger.error("Attempt for job %s aborted: %r", job.id, result)
        else:
            self.logger.debug("Idle cycle for %s - no jobs ready", self.worker_id)
        await self._refresh_queue_gauge()
        return len(jobs)

    async def reclaim_expired(self) -> List[str]:
        """Return jobs whose lease outlived the visibility timeout to the queue.

        An abandoned job that already used its last attempt is failed
        permanently instead, so a message that kills its worker cannot loop.
        """
        now = self._clock()
        lease_before = now - self.visibility_timeout
        exhausted = await self.persistence.fail_exhausted_leases(
            lease_before=lease_before,
            now=now,
            reason=f"lease expired after {self.visibility_timeout:g}s",
        )
        for row in exhausted:
            await self.executor.record_abandoned(Job.from_row(row))
        reclaimed = await self.persistence.reclaim_expired(lease_before=lease_before, now=now)
        if reclaimed:
            self.metrics.inc_reclaimed(len(reclaimed))
            self.logger.warning(
                "Reclaimed %d abandoned job(s) after %gs visibility timeout: %s",
                len(reclaimed),
                self.visibility_timeout,
                ", ".join(reclaimed),
            )
        return reclaimed

    async def acquire(self) -> List[Job]:
        """Lease up to ``batch_size`` eligible jobs for this worker."""
        now = self._clock()
        candidates = await self.persistence.fetch_eligible(limit=self.batch_size, now=now)
        leased: List[Job] = []
        for row in candidates:
            if await self.persistence.try_lease(row["id"], self.worker_id, now):
                row.update(
                    status=JobStatus.SENDING.value,
                    attempt_count=row["attempt_count"] + 1,
                    last_tried_at=now,
                    lease_owner=self.worker_id,
                    lease_at=now,
                )
                leased.append(Job.from_row(row))
            else:
                self.metrics.inc_lease_race_lost()
                self.logger.debug("Lease race lost for job %s", row["id"])
        self.metrics.inc_leased(len(leased))
        if leased:
            self.logger.debug("Worker %s leased %d job(s): %s", self.worker_id, len(leased), ", ".join(j.id for j in leased))
        return leased

    async def _refresh_queue_gauge(self) -> None:
        try:
            counts = await self.persistence.count_by_status()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_queued(counts.get(JobStatus.QUEUED.value, 0))

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        if timeout <= 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()
