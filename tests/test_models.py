import pytest
from pydantic import ValidationError

from async_delivery_queue.models import (
    DEFAULT_PRIORITY,
    DeliveryRecord,
    DeliveryReceipt,
    DeliveryStatus,
    Job,
    JobStatus,
)


def _row(**overrides):
    row = {
        "seq": 7,
        "id": "job-1",
        "parent_ref": "ticket-1",
        "sub_ref": "reply-1",
        "recipient": "user@example.com",
        "subject": "Hello",
        "body": "Body",
        "status": "queued",
        "attempt_count": 0,
        "max_attempts": 5,
        "dedupe_key": "abc",
        "queued_at": 1.0,
    }
    row.update(overrides)
    return row


def test_job_from_row_drops_sequence_column():
    job = Job.from_row(_row())
    assert job.status is JobStatus.QUEUED
    assert job.priority == DEFAULT_PRIORITY
    assert not hasattr(job, "seq")


@pytest.mark.parametrize(
    "status, terminal",
    [
        ("queued", False),
        ("sending", False),
        ("sent", True),
        ("failed", True),
        ("permanent_failure", True),
    ],
)
def test_job_is_terminal(status, terminal):
    assert Job.from_row(_row(status=status)).is_terminal is terminal


def test_job_rejects_invalid_counters():
    with pytest.raises(ValidationError):
        Job.from_row(_row(attempt_count=-1))
    with pytest.raises(ValidationError):
        Job.from_row(_row(max_attempts=0))
    with pytest.raises(ValidationError):
        Job.from_row(_row(status="bounced"))


def test_delivery_record_and_receipt():
    record = DeliveryRecord.model_validate({"parent_ref": "t", "sub_ref": "r", "status": "skipped"})
    assert record.status is DeliveryStatus.SKIPPED
    assert record.attempt_count == 0

    receipt = DeliveryReceipt(provider="smtp", provider_message_id="<1@x>")
    with pytest.raises(ValidationError):
        receipt.provider = "other"
