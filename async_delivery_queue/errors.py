"""Exception hierarchy shared by the queue, the executor and the transports."""

from __future__ import annotations

from typing import Optional


class DeliveryQueueError(Exception):
    """Base exception for delivery queue errors."""

    code = "delivery_queue_error"


class InvalidJobError(DeliveryQueueError):
    """Raised when enqueue input is malformed. Nothing is persisted."""

    code = "invalid_job"


class SuppressedRecipientError(InvalidJobError):
    """Raised when the recipient is on the suppression list."""

    code = "suppressed_recipient"

    def __init__(self, recipient: str):
        super().__init__(f"Recipient {recipient} is suppressed")
        self.recipient = recipient


class NotFoundError(DeliveryQueueError):
    code = "not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class NotRetryableError(DeliveryQueueError):
    """Raised when a manual retry targets a job that is not terminally failed."""

    code = "not_retryable"

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is {status}; only failed jobs can be retried")
        self.job_id = job_id
        self.status = status


class InvalidTokenError(DeliveryQueueError):
    """Raised when a signed report link does not verify."""

    code = "invalid_token"


class DeliveryError(DeliveryQueueError):
    """Transport failure carrying an explicit ``permanent`` flag.

    Transports translate provider specific failures into this type once, so
    the executor never looks at SMTP codes or HTTP statuses.
    """

    code = "delivery_error"

    def __init__(self, message: str, *, permanent: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.permanent = bool(permanent)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Network, rate limit or server side failure. The job is retried."""

    code = "transient_delivery_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message, permanent=False, status_code=status_code)


class PermanentDeliveryError(DeliveryError):
    """Authentication, configuration or content rejection. The job is not retried."""

    code = "permanent_delivery_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message, permanent=True, status_code=status_code)


class RetriesExhaustedError(DeliveryQueueError):
    """Terminal state reached through the attempt ceiling."""

    code = "retries_exhausted"

    def __init__(self, max_attempts: int, last_error: str):
        super().__init__(f"Max attempts ({max_attempts}) exceeded: {last_error}")
        self.max_attempts = max_attempts
        self.last_error = last_error


class LeaseRaceLost(DeliveryQueueError):
    """Another worker won the conditional update for the job. Not user visible."""

    code = "lease_race_lost"

    def __init__(self, job_id: str, worker_id: str):
        super().__init__(f"Worker {worker_id} lost the lease on job {job_id}")
        self.job_id = job_id
        self.worker_id = worker_id
