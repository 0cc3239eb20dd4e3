"""Core orchestration logic for the asynchronous delivery queue."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from .dispatcher import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_VISIBILITY_TIMEOUT,
    Dispatcher,
    generate_worker_id,
)
from .errors import (
    DeliveryQueueError,
    InvalidJobError,
    InvalidTokenError,
    NotFoundError,
    NotRetryableError,
    SuppressedRecipientError,
)
from .executor import DEFAULT_SEND_TIMEOUT, DeliveryExecutor
from .logger import get_logger
from .models import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    RETRYABLE_STATUSES,
    DeliveryRecord,
    DeliveryStatus,
    Job,
    JobStatus,
    SuppressionSource,
)
from .persistence import Persistence
from .prometheus import DeliveryMetrics
from .retry import RetryPolicy
from .synchronizer import (
    CompositeStatusSynchronizer,
    RecordStatusSynchronizer,
    StatusSynchronizer,
    WebhookStatusSynchronizer,
)
from .transports import DeliveryTransport, build_transport

POOL_CLEANUP_INTERVAL = 150.0
DEFAULT_PUBLIC_BASE_URL = "http://localhost:8000"
MISDIRECTED_REASON = "Recipient reports misdirected email"


def compute_dedupe_key(parent_ref: str, sub_ref: str, recipient: str, subject: str, body: str) -> str:
    """Hash identifying a logical message addressed to one parent sub-field."""
    digest = hashlib.sha256()
    digest.update("\0".join((parent_ref, sub_ref, recipient, subject, body)).encode("utf-8"))
    return digest.hexdigest()


def normalise_recipient(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


class AsyncDeliveryCore:
    """Wire the store, the transport, the executor and the dispatcher together.

    The core is the single entry point used by the HTTP API and the CLI. All
    state lives in the SQLite store, so several cores (one per worker process)
    can share the same database file.
    """

    def __init__(
        self,
        *,
        db_path: str | None = "/data/delivery_queue.db",
        transport: DeliveryTransport | None = None,
        transport_settings: Mapping[str, Any] | None = None,
        synchronizer: StatusSynchronizer | None = None,
        sync_url: str | None = None,
        sync_token: str | None = None,
        sync_user: str | None = None,
        sync_password: str | None = None,
        logger=None,
        metrics: DeliveryMetrics | None = None,
        worker_id: str | None = None,
        start_active: bool = True,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = 5.0,
        backoff_cap: float = 600.0,
        jitter_fraction: float = 0.3,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        default_priority: int = DEFAULT_PRIORITY,
        log_delivery_activity: bool = False,
        misdirect_secret: str | None = None,
        public_base_url: str | None = None,
        clock: Optional[Callable[[], float]] = None,
        rand: Optional[Callable[[], float]] = None,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path or ":memory:")
        self.metrics = metrics or DeliveryMetrics()
        self.transport = transport or build_transport(transport_settings or {})
        self._clock = clock or time.time

        if synchronizer is None:
            synchronizer = RecordStatusSynchronizer(self.persistence, clock=self._clock)
            if sync_url:
                webhook = WebhookStatusSynchronizer(
                    sync_url, token=sync_token, user=sync_user, password=sync_password
                )
                synchronizer = CompositeStatusSynchronizer([synchronizer, webhook])
        self.synchronizer = synchronizer

        if int(max_attempts) < 1:
            raise ValueError("max_attempts must be at least 1")
        if float(send_timeout) >= float(visibility_timeout):
            raise ValueError("send_timeout must be shorter than visibility_timeout")
        self._max_attempts = int(max_attempts)
        self._default_priority = int(default_priority)
        self.worker_id = worker_id or generate_worker_id()
        self.policy = RetryPolicy(base=float(backoff_base), cap=float(backoff_cap), jitter_fraction=float(jitter_fraction))

        self.executor = DeliveryExecutor(
            persistence=self.persistence,
            transport=self.transport,
            synchronizer=self.synchronizer,
            worker_id=self.worker_id,
            policy=self.policy,
            metrics=self.metrics,
            send_timeout=send_timeout,
            clock=self._clock,
            rand=rand,
            logger=self.logger,
            log_delivery_activity=log_delivery_activity,
        )
        self.dispatcher = Dispatcher(
            persistence=self.persistence,
            executor=self.executor,
            worker_id=self.worker_id,
            batch_size=batch_size,
            poll_interval=poll_interval,
            visibility_timeout=visibility_timeout,
            metrics=self.metrics,
            clock=self._clock,
            logger=self.logger,
        )

        self._misdirect_secret = misdirect_secret.encode("utf-8") if misdirect_secret else None
        self._public_base_url = (public_base_url or DEFAULT_PUBLIC_BASE_URL).rstrip("/")

        self._active = bool(start_active)
        self._stop = asyncio.Event()
        self._task_cleanup: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], **overrides: Any) -> "AsyncDeliveryCore":
        """Build a core from the dictionary returned by ``load_settings``."""
        kwargs: Dict[str, Any] = dict(
            db_path=settings.get("db_path"),
            transport_settings=settings,
            sync_url=settings.get("sync_url"),
            sync_token=settings.get("sync_token"),
            sync_user=settings.get("sync_user"),
            sync_password=settings.get("sync_password"),
            worker_id=settings.get("worker_id"),
            start_active=bool(settings.get("start_active", True)),
            log_delivery_activity=bool(settings.get("log_delivery_activity")),
            misdirect_secret=settings.get("misdirect_secret"),
            public_base_url=settings.get("public_base_url"),
        )
        for key in (
            "poll_interval",
            "batch_size",
            "visibility_timeout",
            "max_attempts",
            "backoff_base",
            "backoff_cap",
            "jitter_fraction",
            "send_timeout",
            "default_priority",
        ):
            if settings.get(key) is not None:
                kwargs[key] = settings[key]
        kwargs.update(overrides)
        return cls(**kwargs)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Initialise persistence and the queue gauge."""
        await self.persistence.init_db()
        counts = await self.persistence.count_by_status()
        self.metrics.set_queued(counts.get(JobStatus.QUEUED.value, 0))

    async def start(self) -> None:
        """Start the dispatcher (when active) and the pool maintenance task."""
        self.logger.debug("Starting AsyncDeliveryCore (worker %s)...", self.worker_id)
        await self.init()
        self._stop.clear()
        if self._active:
            self.dispatcher.start()
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="transport-cleanup-loop")

    async def stop(self) -> None:
        """Stop background tasks and release the transport."""
        self._stop.set()
        await self.dispatcher.stop()
        if self._task_cleanup is not None:
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None
        await self.transport.close()

    async def _cleanup_loop(self) -> None:
        """Background coroutine that keeps pooled transport connections healthy."""
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(POOL_CLEANUP_INTERVAL):
                    await self._stop.wait()
            except TimeoutError:
                try:
                    await self.transport.cleanup()
                except Exception:  # pragma: no cover
                    self.logger.exception("Transport cleanup failed")

    @property
    def active(self) -> bool:
        return self._active

    def run_now(self) -> None:
        self.dispatcher.wake()

    async def activate(self) -> None:
        self._active = True
        self.dispatcher.start()

    async def suspend(self) -> None:
        self._active = False
        await self.dispatcher.stop()

    # ------------------------------------------------------------------- enqueue
    async def enqueue(
        self,
        parent_ref: str,
        sub_ref: str,
        recipient: str,
        subject: str,
        body: str,
        priority: int | None = None,
    ) -> Job:
        """Persist a delivery job and return it.

        A request repeating the parent, sub-field, recipient and content of an
        existing job returns that job unchanged, whatever its state; nothing
        new is stored.
        """
        job, _ = await self._enqueue(parent_ref, sub_ref, recipient, subject, body, priority)
        return job

    async def _enqueue(
        self,
        parent_ref: Any,
        sub_ref: Any,
        recipient: Any,
        subject: Any,
        body: Any,
        priority: Any = None,
    ) -> Tuple[Job, bool]:
        address = normalise_recipient(recipient)
        if not address or "@" not in address:
            raise InvalidJobError(f"Invalid recipient: {recipient!r}")
        if not isinstance(parent_ref, str) or not parent_ref.strip():
            raise InvalidJobError("parent_ref is required")
        if not isinstance(sub_ref, str) or not sub_ref.strip():
            raise InvalidJobError("sub_ref is required")
        if not isinstance(subject, str):
            raise InvalidJobError("subject must be a string")
        if not isinstance(body, str):
            raise InvalidJobError("body must be a string")
        if priority is None:
            priority = self._default_priority
        elif isinstance(priority, bool) or not isinstance(priority, int):
            raise InvalidJobError("priority must be an integer")

        now = self._clock()
        if await self.persistence.is_suppressed(address, now):
            self.logger.info("Skipping delivery to suppressed recipient %s (%s/%s)", address, parent_ref, sub_ref)
            await self._sync(
                parent_ref,
                sub_ref,
                {"status": DeliveryStatus.SKIPPED, "error_message": "Recipient is suppressed", "attempt_count": 0},
            )
            raise SuppressedRecipientError(address)

        entry = {
            "id": uuid.uuid4().hex,
            "parent_ref": parent_ref,
            "sub_ref": sub_ref,
            "recipient": address,
            "subject": subject,
            "body": body,
            "max_attempts": self._max_attempts,
            "dedupe_key": compute_dedupe_key(parent_ref, sub_ref, address, subject, body),
            "priority": priority,
            "queued_at": now,
        }
        row, created = await self.persistence.insert_job(entry)
        job = Job.from_row(row)
        if not created:
            self.logger.info("Duplicate enqueue for %s matched existing job %s (%s)", address, job.id, job.status.value)
            return job, False

        self.metrics.queued.inc()
        await self._sync(
            parent_ref,
            sub_ref,
            {
                "status": DeliveryStatus.QUEUED,
                "queued_at": now,
                "attempt_count": 0,
                "max_attempts": job.max_attempts,
                "next_attempt_at": None,
                "error_message": None,
            },
        )
        return job, True

    # --------------------------------------------------------------------- retry
    async def retry(self, job_id: str) -> Job:
        """Return a terminally failed job to the queue for a few more attempts."""
        row = await self.persistence.get_job(job_id)
        if row is None:
            raise NotFoundError(job_id)
        job = Job.from_row(row)
        if job.status not in RETRYABLE_STATUSES:
            raise NotRetryableError(job_id, job.status.value)

        if job.status is JobStatus.PERMANENT_FAILURE:
            attempt_count = max(0, job.max_attempts - 2)
        else:
            attempt_count = job.attempt_count
        now = self._clock()
        reset = await self.persistence.reset_for_retry(
            job_id, expected_status=job.status.value, attempt_count=attempt_count, now=now
        )
        if not reset:
            current = await self.persistence.get_job(job_id)
            raise NotRetryableError(job_id, current["status"] if current else job.status.value)

        self.logger.info("Job %s requeued by manual retry (attempt_count=%d)", job_id, attempt_count)
        await self._sync(
            job.parent_ref,
            job.sub_ref,
            {
                "status": DeliveryStatus.QUEUED,
                "attempt_count": attempt_count,
                "next_attempt_at": now,
                "error_message": None,
            },
        )
        self.dispatcher.wake()
        return Job.from_row(await self.persistence.get_job(job_id))

    # -------------------------------------------------------------------- queries
    async def get_job(self, job_id: str) -> Job:
        row = await self.persistence.get_job(job_id)
        if row is None:
            raise NotFoundError(job_id)
        return Job.from_row(row)

    async def list_jobs(self, status: str | JobStatus | None = None, limit: int | None = None) -> List[Job]:
        if status is not None:
            try:
                status = JobStatus(status)
            except ValueError:
                raise InvalidJobError(f"Unknown job status: {status}") from None
        rows = await self.persistence.list_jobs(status=status, limit=limit)
        return [Job.from_row(row) for row in rows]

    async def get_delivery(self, parent_ref: str, sub_ref: str) -> Optional[DeliveryRecord]:
        """Read the delivery sub-field of a parent record, ``None`` if never written."""
        row = await self.persistence.get_delivery(parent_ref, sub_ref)
        if row is None:
            return None
        return DeliveryRecord.model_validate(row)

    async def queue_summary(self) -> Dict[str, int]:
        return await self.persistence.count_by_status()

    # --------------------------------------------------------------- suppression
    async def suppress(
        self,
        email: str,
        *,
        reason: str | None = None,
        source: str = SuppressionSource.ADMIN.value,
        manual: bool = True,
        expires_at: float | None = None,
    ) -> Dict[str, Any]:
        address = normalise_recipient(email)
        if not address or "@" not in address:
            raise InvalidJobError(f"Invalid email: {email!r}")
        try:
            source_value = SuppressionSource(source)
        except ValueError:
            raise InvalidJobError(f"Unknown suppression source: {source}") from None
        entry = await self.persistence.add_suppression(
            address, reason=reason, source=source_value, manual=manual, expires_at=expires_at, now=self._clock()
        )
        self.logger.info("Suppressed %s (%s)", address, source_value.value)
        return entry

    async def unsuppress(self, email: str) -> bool:
        return await self.persistence.remove_suppression(normalise_recipient(email))

    async def list_suppressed(self) -> List[Dict[str, Any]]:
        return await self.persistence.list_suppressions()

    def misdirected_token(self, email: str, job_id: str) -> str:
        """HMAC binding a recipient address to the job that reached it."""
        if self._misdirect_secret is None:
            self.logger.warning("No misdirect secret configured; report links will not survive a restart")
            self._misdirect_secret = secrets.token_bytes(32)
        message = f"{normalise_recipient(email)}|{job_id}".encode("utf-8")
        return hmac.new(self._misdirect_secret, message, hashlib.sha256).hexdigest()

    async def misdirected_link(self, job_id: str) -> str:
        """Public URL the recipient of ``job_id`` can follow to report a misdirected email."""
        job = await self.get_job(job_id)
        query = urlencode({"m": job.id, "e": job.recipient, "t": self.misdirected_token(job.recipient, job.id)})
        return f"{self._public_base_url}/report-misdirected?{query}"

    async def report_misdirected(self, email: Any, job_id: Any, token: Any) -> Dict[str, Any]:
        """Verify a report link and suppress the address it was sent to."""
        if not email or not job_id or not token:
            raise InvalidJobError("Missing parameters")
        address = normalise_recipient(email)
        expected = self.misdirected_token(address, str(job_id))
        if not secrets.compare_digest(str(token).encode("utf-8"), expected.encode("utf-8")):
            raise InvalidTokenError("Invalid token")
        row = await self.persistence.get_job(str(job_id))
        if row is None:
            raise NotFoundError(str(job_id))
        if row["recipient"] != address:
            raise InvalidJobError("Email mismatch")
        self.logger.info("Recipient %s reported job %s as misdirected", address, job_id)
        return await self.suppress(
            address, reason=MISDIRECTED_REASON, source=SuppressionSource.MISDIRECTED.value, manual=False
        )

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands.

        Queue errors are reported as ``{"ok": False, "error": ..., "code": ...}``.
        """
        payload = payload or {}
        try:
            return await self._dispatch_command(cmd, payload)
        except DeliveryQueueError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}

    async def _dispatch_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "run now":
            self.run_now()
            return {"ok": True}
        if cmd == "suspend":
            await self.suspend()
            return {"ok": True, "active": False}
        if cmd == "activate":
            await self.activate()
            return {"ok": True, "active": True}
        if cmd == "status":
            counts = await self.queue_summary()
            return {"ok": True, "active": self._active, "worker_id": self.worker_id, "counts": counts}
        if cmd == "enqueue":
            job, created = await self._enqueue(
                payload.get("parent_ref"),
                payload.get("sub_ref"),
                payload.get("recipient"),
                payload.get("subject"),
                payload.get("body"),
                payload.get("priority"),
            )
            return {"ok": True, "created": created, "job": job.model_dump(mode="json")}
        if cmd == "retry":
            job = await self.retry(payload.get("id"))
            return {"ok": True, "job": job.model_dump(mode="json")}
        if cmd == "getJob":
            job = await self.get_job(payload.get("id"))
            return {"ok": True, "job": job.model_dump(mode="json")}
        if cmd == "listJobs":
            jobs = await self.list_jobs(status=payload.get("status"), limit=payload.get("limit"))
            return {"ok": True, "jobs": [job.model_dump(mode="json") for job in jobs]}
        if cmd == "getDelivery":
            record = await self.get_delivery(payload.get("parent_ref"), payload.get("sub_ref"))
            if record is None:
                return {"ok": False, "error": "delivery not found", "code": NotFoundError.code}
            return {"ok": True, "delivery": record.model_dump(mode="json")}
        if cmd == "suppress":
            entry = await self.suppress(
                payload.get("email"),
                reason=payload.get("reason"),
                source=payload.get("source") or SuppressionSource.ADMIN.value,
                manual=bool(payload.get("manual", True)),
                expires_at=payload.get("expires_at"),
            )
            return {"ok": True, "suppression": entry}
        if cmd == "unsuppress":
            removed = await self.unsuppress(payload.get("email") or "")
            if not removed:
                return {"ok": False, "error": "email not suppressed", "code": NotFoundError.code}
            return {"ok": True}
        if cmd == "listSuppressed":
            return {"ok": True, "suppressions": await self.list_suppressed()}
        if cmd == "misdirectedLink":
            return {"ok": True, "link": await self.misdirected_link(payload.get("id"))}
        if cmd == "reportMisdirected":
            entry = await self.report_misdirected(payload.get("email"), payload.get("id"), payload.get("token"))
            return {"ok": True, "suppression": entry}
        return {"ok": False, "error": "unknown command"}

    async def _sync(self, parent_ref: str, sub_ref: str, update: Dict[str, Any]) -> None:
        try:
            await self.synchronizer.sync(parent_ref, sub_ref, update)
        except Exception as exc:
            self.metrics.inc_sync_failure()
            self.logger.warning("Status sync failed for %s/%s: %s", parent_ref, sub_ref, exc)
