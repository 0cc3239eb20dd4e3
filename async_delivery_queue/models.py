"""Pydantic models for delivery jobs and their status projection.

Models:
    - JobStatus: lifecycle states of a queued delivery
    - DeliveryStatus: states exposed through the parent record projection
    - Job: a persisted delivery job
    - DeliveryRecord: the delivery sub-field of a parent record
    - DeliveryReceipt: what a transport returns on success
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PRIORITY = 100
DEFAULT_MAX_ATTEMPTS = 5


class JobStatus(str, Enum):
    """Lifecycle states of a delivery job.

    Attributes:
        QUEUED: Eligible for leasing once ``next_attempt_at`` has passed.
        SENDING: Leased by a worker; an attempt is in flight.
        SENT: Delivered. Terminal, never mutated again.
        FAILED: Terminal failure set outside the worker, e.g. by an operator
            closing a job by hand. The worker never writes it; manual retry
            accepts it and keeps the attempt count.
        PERMANENT_FAILURE: Terminal failure; only a manual retry revives it.
    """

    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    PERMANENT_FAILURE = "permanent_failure"


RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.PERMANENT_FAILURE})


class DeliveryStatus(str, Enum):
    """Status values written into the parent record's delivery sub-field.

    ``FAILED`` is observational: the job itself is back in ``queued`` and
    will be retried at ``next_attempt_at``.
    """

    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    PERMANENT_FAILURE = "permanent_failure"
    SKIPPED = "skipped"


class SuppressionSource(str, Enum):
    MISDIRECTED = "misdirected"
    ADMIN = "admin"
    BOUNCE = "bounce"
    ABUSE = "abuse"
    OTHER = "other"


class Job(BaseModel):
    """A delivery job as stored in the ``jobs`` table.

    Timestamps are seconds since the epoch (UTC).
    """

    model_config = ConfigDict(use_enum_values=False)

    id: str
    parent_ref: str
    sub_ref: str
    recipient: str
    subject: str
    body: str
    status: JobStatus = JobStatus.QUEUED
    attempt_count: Annotated[int, Field(ge=0)] = 0
    max_attempts: Annotated[int, Field(ge=1)] = DEFAULT_MAX_ATTEMPTS
    next_attempt_at: Optional[float] = None
    last_error: Optional[str] = None
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    dedupe_key: str
    priority: int = DEFAULT_PRIORITY
    lease_owner: Optional[str] = None
    lease_at: Optional[float] = None
    queued_at: float
    last_tried_at: Optional[float] = None
    sent_at: Optional[float] = None
    updated_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        data = {key: value for key, value in row.items() if key != "seq"}
        return cls.model_validate(data)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.SENT, JobStatus.FAILED, JobStatus.PERMANENT_FAILURE)


class DeliveryRecord(BaseModel):
    """Read model of a parent record's delivery sub-field."""

    parent_ref: str
    sub_ref: str
    status: DeliveryStatus
    queued_at: Optional[float] = None
    sent_at: Optional[float] = None
    last_tried_at: Optional[float] = None
    next_attempt_at: Optional[float] = None
    attempt_count: int = 0
    max_attempts: Optional[int] = None
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    updated_at: Optional[float] = None


class DeliveryReceipt(BaseModel):
    """Provider acknowledgement for a successful send."""

    model_config = ConfigDict(frozen=True)

    provider: str
    provider_message_id: Optional[str] = None
