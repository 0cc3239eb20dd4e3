import asyncio

import pytest

from async_delivery_queue.models import DeliveryStatus


@pytest.mark.asyncio
async def test_insert_job_is_idempotent_on_dedupe_key(store, make_entry):
    await store.init_db()
    row, created = await store.insert_job(make_entry(1))
    assert created is True
    assert row["status"] == "queued"
    assert row["attempt_count"] == 0
    assert row["next_attempt_at"] is None

    again, created = await store.insert_job(make_entry(1, id="other-id", sub_ref="reply-9"))
    assert created is False
    assert again["id"] == "job-1"
    assert again["sub_ref"] == "reply-1"
    assert len(await store.list_jobs()) == 1


@pytest.mark.asyncio
async def test_fetch_eligible_orders_and_filters(store, make_entry, clock):
    await store.init_db()
    await store.insert_job(make_entry(1, priority=100))
    await store.insert_job(make_entry(2, priority=10))
    await store.insert_job(make_entry(3, priority=100))
    await store.insert_job(make_entry(4, priority=1))
    await store.try_lease("job-4", "other", clock())

    rows = await store.fetch_eligible(limit=10, now=clock())
    assert [r["id"] for r in rows] == ["job-2", "job-1", "job-3"]

    rows = await store.fetch_eligible(limit=2, now=clock())
    assert [r["id"] for r in rows] == ["job-2", "job-1"]


@pytest.mark.asyncio
async def test_fetch_eligible_respects_next_attempt_at(store, make_entry, clock):
    await store.init_db()
    await store.insert_job(make_entry(1))
    assert await store.try_lease("job-1", "w1", clock())
    assert await store.schedule_retry(
        "job-1", "w1", attempt_count=1, error="busy", next_attempt_at=clock() + 30, now=clock()
    )

    assert await store.fetch_eligible(limit=10, now=clock()) == []
    assert await store.fetch_eligible(limit=10, now=clock() + 29.9) == []
    rows = await store.fetch_eligible(limit=10, now=clock() + 30)
    assert [r["id"] for r in rows] == ["job-1"]


@pytest.mark.asyncio
async def test_lease_is_granted_once(store, make_entry, clock):
    await store.init_db()
    await store.insert_job(make_entry(1))

    results = await asyncio.gather(*(store.try_lease("job-1", f"w{i}", clock()) for i in range(5)))
    assert results.count(True) == 1

    job = await store.get_job("job-1")
    assert job["status"] == "sending"
    assert job["lease_owner"] == f"w{results.index(True)}"
    assert job["lease_at"] == clock()
    assert job["attempt_count"] == 1
    assert job["last_tried_at"] == clock()


@pytest.mark.asyncio
async def test_outcome_write_requires_lease_owner(store, make_entry, clock):
    await store.init_db()
    await store.insert_job(make_entry(1))
    await store.try_lease("job-1", "w1", clock())

    assert not await store.mark_sent(
        "job-1", "w2", attempt_count=1, provider="smtp", provider_message_id="<x>", now=clock()
    )
    assert await store.mark_sent(
        "job-1", "w1", attempt_count=1, provider="smtp", provider_message_id="<x>", now=clock()
    )
    job = await store.get_job("job-1")
    assert job["status"] == "sent"
    assert job["lease_owner"] is None
    assert job["sent_at"] == clock()

    # a sent job is never touched again
    assert not await store.try_lease("job-1", "w1", clock())
    assert not await store.mark_permanent_failure("job-1", "w1", attempt_count=2, error="x", now=clock())
    assert not await store.reset_for_retry("job-1", expected_status="permanent_failure", attempt_count=0, now=clock())
    assert (await store.get_job("job-1"))["status"] == "sent"


@pytest.mark.asyncio
async def test_reclaim_expired_keeps_attempt_count(store, make_entry, clock):
    await store.init_db()
    await store.insert_job(make_entry(1))
    await store.insert_job(make_entry(2))
    await store.try_lease("job-1", "w1", clock())
    await store.schedule_retry("job-1", "w1", attempt_count=2, error="busy", next_attempt_at=clock(), now=clock())
    await store.try_lease("job-1", "w1", clock())
    clock.advance(100)
    await store.try_lease("job-2", "w1", clock())

    reclaimed = await store.reclaim_expired(lease_before=clock() - 50, now=clock())
    assert reclaimed == ["job-1"]

    job = await store.get_job("job-1")
    assert job["status"] == "queued"
    assert job["lease_owner"] is None
    assert job["lease_at"] is None
    assert job["attempt_count"] == 3
    assert (await store.get_job("job-2"))["status"] == "sending"


@pytest.mark.asyncio
async def test_expired_lease_on_last_attempt_fails_permanently(store, make_entry, clock):
    await store.init_db()
    await store.insert_job(make_entry(1, max_attempts=1))
    await store.insert_job(make_entry(2, max_attempts=2))
    await store.try_lease("job-1", "w1", clock())
    await store.try_lease("job-2", "w1", clock())
    clock.advance(100)

    failed = await store.fail_exhausted_leases(lease_before=clock() - 50, now=clock(), reason="lease expired")
    assert [row["id"] for row in failed] == ["job-1"]
    assert failed[0]["status"] == "permanent_failure"
    assert failed[0]["last_error"] == "Max attempts (1) exceeded: lease expired"
    assert failed[0]["lease_owner"] is None
    assert failed[0]["attempt_count"] == 1

    # the exhausted job is never reclaimed, the other one is
    assert await store.reclaim_expired(lease_before=clock() - 50, now=clock()) == ["job-2"]
    assert await store.fail_exhausted_leases(lease_before=clock() - 50, now=clock(), reason="x") == []


@pytest.mark.asyncio
async def test_reset_for_retry_is_compare_and_set(store, make_entry, clock):
    await store.init_db()
    await store.insert_job(make_entry(1))
    await store.try_lease("job-1", "w1", clock())
    await store.mark_permanent_failure("job-1", "w1", attempt_count=5, error="boom", now=clock())

    assert await store.reset_for_retry("job-1", expected_status="permanent_failure", attempt_count=3, now=clock())
    assert not await store.reset_for_retry("job-1", expected_status="permanent_failure", attempt_count=3, now=clock())

    job = await store.get_job("job-1")
    assert job["status"] == "queued"
    assert job["attempt_count"] == 3
    assert job["last_error"] is None
    assert job["next_attempt_at"] == clock()


@pytest.mark.asyncio
async def test_count_by_status(store, make_entry, clock):
    await store.init_db()
    for n in range(3):
        await store.insert_job(make_entry(n))
    await store.try_lease("job-0", "w1", clock())

    counts = await store.count_by_status()
    assert counts["queued"] == 2
    assert counts["sending"] == 1
    assert counts["sent"] == 0
    assert counts["permanent_failure"] == 0


@pytest.mark.asyncio
async def test_upsert_delivery_merges_fields(store, clock):
    await store.init_db()
    await store.upsert_delivery(
        "ticket-1", "reply-1", {"status": DeliveryStatus.QUEUED, "queued_at": clock(), "max_attempts": 5}, clock()
    )
    await store.upsert_delivery(
        "ticket-1", "reply-1", {"status": DeliveryStatus.SENT, "provider": "smtp", "attempt_count": 1}, clock() + 1
    )

    record = await store.get_delivery("ticket-1", "reply-1")
    assert record["status"] == "sent"
    assert record["queued_at"] == clock()
    assert record["max_attempts"] == 5
    assert record["provider"] == "smtp"
    assert record["updated_at"] == clock() + 1
    assert await store.get_delivery("ticket-1", "reply-2") is None


@pytest.mark.asyncio
async def test_upsert_delivery_rejects_unknown_fields(store, clock):
    await store.init_db()
    with pytest.raises(ValueError, match="subject"):
        await store.upsert_delivery("ticket-1", "reply-1", {"status": "sent", "subject": "x"}, clock())


@pytest.mark.asyncio
async def test_suppression_lifecycle(store, clock):
    await store.init_db()
    entry = await store.add_suppression(
        "bad@example.com", reason="bounced", source="bounce", manual=False, expires_at=None, now=clock()
    )
    assert entry["hit_count"] == 1
    assert entry["manual"] is False

    entry = await store.add_suppression(
        "bad@example.com", reason=None, source="admin", manual=True, expires_at=None, now=clock()
    )
    assert entry["hit_count"] == 2
    assert entry["reason"] == "bounced"
    assert entry["manual"] is True

    await store.add_suppression(
        "temp@example.com", reason=None, source="other", manual=False, expires_at=clock() + 60, now=clock()
    )
    assert await store.is_suppressed("bad@example.com", clock())
    assert await store.is_suppressed("temp@example.com", clock())
    assert not await store.is_suppressed("temp@example.com", clock() + 61)

    assert [e["email"] for e in await store.list_suppressions()] == ["bad@example.com", "temp@example.com"]
    assert await store.remove_suppression("bad@example.com") is True
    assert await store.remove_suppression("bad@example.com") is False
    assert not await store.is_suppressed("bad@example.com", clock())
