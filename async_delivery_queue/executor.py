"""Single delivery attempt: call the transport, classify, persist, synchronise."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .errors import DeliveryError, LeaseRaceLost, RetriesExhaustedError
from .logger import get_logger
from .models import DeliveryReceipt, DeliveryStatus, Job
from .persistence import Persistence
from .prometheus import DeliveryMetrics
from .retry import RetryPolicy
from .synchronizer import StatusSynchronizer
from .transports.base import DeliveryTransport

DEFAULT_SEND_TIMEOUT = 30.0


def _iso(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


class DeliveryExecutor:
    """Run one attempt for a leased job and persist the resulting state.

    ``attempt`` never raises for delivery problems: success, transient and
    permanent failures all end in a conditional write guarded by the lease.
    If the lease was reclaimed in the meantime the write is dropped and the
    parent record is left alone.
    """

    def __init__(
        self,
        *,
        persistence: Persistence,
        transport: DeliveryTransport,
        synchronizer: StatusSynchronizer,
        worker_id: str,
        policy: Optional[RetryPolicy] = None,
        metrics: Optional[DeliveryMetrics] = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        clock: Optional[Callable[[], float]] = None,
        rand: Optional[Callable[[], float]] = None,
        logger=None,
        log_delivery_activity: bool = False,
    ):
        self.persistence = persistence
        self.transport = transport
        self.synchronizer = synchronizer
        self.worker_id = worker_id
        self.policy = policy or RetryPolicy()
        self.metrics = metrics or DeliveryMetrics()
        self.send_timeout = float(send_timeout)
        self.logger = logger or get_logger()
        self._clock = clock or time.time
        self._rand = rand
        self._log_delivery_activity = bool(log_delivery_activity)

    async def attempt(self, job: Job) -> None:
        """Deliver a job leased by this worker. The lease already counted the attempt."""
        attempt_count = job.attempt_count
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery of job %s to %s (attempt %d/%d)",
                job.id,
                job.recipient,
                attempt_count,
                job.max_attempts,
            )
        await self._sync(
            job,
            {
                "status": DeliveryStatus.SENDING,
                "attempt_count": attempt_count,
                "last_tried_at": job.last_tried_at,
                "next_attempt_at": None,
            },
        )
        try:
            async with asyncio.timeout(self.send_timeout):
                receipt = await self.transport.send(job.recipient, job.subject, job.body)
        except DeliveryError as exc:
            await self._handle_failure(job, attempt_count, str(exc), exc.permanent)
        except TimeoutError:
            await self._handle_failure(
                job, attempt_count, f"Delivery timed out after {self.send_timeout:g}s", False
            )
        except Exception as exc:
            self.logger.warning("Transport %s raised unclassified error for job %s: %r", self.transport.name, job.id, exc)
            await self._handle_failure(job, attempt_count, str(exc) or exc.__class__.__name__, False)
        else:
            await self._handle_success(job, attempt_count, receipt)

    async def _handle_success(self, job: Job, attempt_count: int, receipt: DeliveryReceipt) -> None:
        now = self._clock()
        stored = await self.persistence.mark_sent(
            job.id,
            self.worker_id,
            attempt_count=attempt_count,
            provider=receipt.provider,
            provider_message_id=receipt.provider_message_id,
            now=now,
        )
        if not stored:
            self._lease_lost(job, "sent")
            return
        self.metrics.inc_sent(receipt.provider)
        if self._log_delivery_activity:
            self.logger.info("Delivery succeeded for job %s via %s (%s)", job.id, receipt.provider, receipt.provider_message_id)
        await self._sync(
            job,
            {
                "status": DeliveryStatus.SENT,
                "sent_at": now,
                "last_tried_at": now,
                "provider": receipt.provider,
                "provider_message_id": receipt.provider_message_id,
                "attempt_count": attempt_count,
                "next_attempt_at": None,
                "error_message": None,
            },
        )

    async def _handle_failure(self, job: Job, attempt_count: int, error: str, permanent: bool) -> None:
        now = self._clock()
        if permanent or attempt_count >= job.max_attempts:
            if not permanent:
                error = str(RetriesExhaustedError(job.max_attempts, error))
            stored = await self.persistence.mark_permanent_failure(
                job.id, self.worker_id, attempt_count=attempt_count, error=error, now=now
            )
            if not stored:
                self._lease_lost(job, "permanent_failure")
                return
            self.metrics.inc_permanent_failure()
            self.logger.error("Job %s failed permanently after %d attempt(s): %s", job.id, attempt_count, error)
            await self._sync(
                job,
                {
                    "status": DeliveryStatus.PERMANENT_FAILURE,
                    "error_message": error,
                    "attempt_count": attempt_count,
                    "last_tried_at": now,
                    "next_attempt_at": None,
                },
            )
            return

        delay = self.policy.delay(attempt_count, self._rand)
        next_attempt_at = now + delay
        stored = await self.persistence.schedule_retry(
            job.id,
            self.worker_id,
            attempt_count=attempt_count,
            error=error,
            next_attempt_at=next_attempt_at,
            now=now,
        )
        if not stored:
            self._lease_lost(job, "queued")
            return
        self.metrics.inc_transient_failure()
        self.logger.warning(
            "Temporary error for job %s (attempt %d/%d): %s - retrying in %.1fs at %s",
            job.id,
            attempt_count,
            job.max_attempts,
            error,
            delay,
            _iso(next_attempt_at),
        )
        await self._sync(
            job,
            {
                "status": DeliveryStatus.FAILED,
                "error_message": error,
                "next_attempt_at": next_attempt_at,
                "attempt_count": attempt_count,
                "last_tried_at": now,
            },
        )

    async def record_abandoned(self, job: Job) -> None:
        """Report a job whose last attempt never came back from its worker."""
        self.metrics.inc_permanent_failure()
        self.logger.error("Job %s failed permanently after %d attempt(s): %s", job.id, job.attempt_count, job.last_error)
        await self._sync(
            job,
            {
                "status": DeliveryStatus.PERMANENT_FAILURE,
                "error_message": job.last_error,
                "attempt_count": job.attempt_count,
                "last_tried_at": job.last_tried_at,
                "next_attempt_at": None,
            },
        )

    def _lease_lost(self, job: Job, target: str) -> None:
        self.metrics.inc_lease_race_lost()
        self.logger.warning("%s; dropping %s outcome", LeaseRaceLost(job.id, self.worker_id), target)

    async def _sync(self, job: Job, update: Dict[str, Any]) -> None:
        try:
            await self.synchronizer.sync(job.parent_ref, job.sub_ref, update)
        except Exception as exc:
            self.metrics.inc_sync_failure()
            self.logger.warning(
                "Status sync failed for job %s (%s/%s): %s", job.id, job.parent_ref, job.sub_ref, exc
            )
