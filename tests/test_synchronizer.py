import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from async_delivery_queue.models import DeliveryStatus
from async_delivery_queue.synchronizer import (
    CompositeStatusSynchronizer,
    RecordStatusSynchronizer,
    WebhookStatusSynchronizer,
)

from conftest import RecordingSynchronizer

SYNC_URL = "https://tickets.example.com/delivery-report"


@pytest.mark.asyncio
async def test_record_synchronizer_writes_projection(store, clock):
    await store.init_db()
    synchronizer = RecordStatusSynchronizer(store, clock=clock)

    await synchronizer.sync("ticket-1", "reply-1", {"status": DeliveryStatus.QUEUED, "queued_at": clock()})
    clock.advance(10)
    await synchronizer.sync(
        "ticket-1",
        "reply-1",
        {"status": DeliveryStatus.SENT, "sent_at": clock(), "provider": "smtp", "provider_message_id": "<m@x>"},
    )

    record = await store.get_delivery("ticket-1", "reply-1")
    assert record["status"] == "sent"
    assert record["queued_at"] == clock() - 10
    assert record["provider_message_id"] == "<m@x>"
    assert record["updated_at"] == clock()


@pytest.mark.asyncio
async def test_webhook_posts_delivery_report_with_bearer_token():
    synchronizer = WebhookStatusSynchronizer(SYNC_URL, token="t0k")
    with aioresponses() as mocked:
        mocked.post(SYNC_URL, status=200)
        await synchronizer.sync("ticket-1", "reply-1", {"status": DeliveryStatus.FAILED, "attempt_count": 2})

        [call] = mocked.requests[("POST", URL(SYNC_URL))]
        assert call.kwargs["headers"] == {"Authorization": "Bearer t0k"}
        assert call.kwargs["auth"] is None
        assert call.kwargs["json"] == {
            "delivery_report": [
                {"parent_ref": "ticket-1", "sub_ref": "reply-1", "status": "failed", "attempt_count": 2}
            ]
        }


@pytest.mark.asyncio
async def test_webhook_uses_basic_auth_without_token():
    synchronizer = WebhookStatusSynchronizer(SYNC_URL, user="svc", password="pw")
    with aioresponses() as mocked:
        mocked.post(SYNC_URL, status=204)
        await synchronizer.sync("ticket-1", "reply-1", {"status": "sent"})

        [call] = mocked.requests[("POST", URL(SYNC_URL))]
        assert call.kwargs["auth"] == aiohttp.BasicAuth("svc", "pw")


@pytest.mark.asyncio
async def test_webhook_raises_on_error_status():
    synchronizer = WebhookStatusSynchronizer(SYNC_URL)
    with aioresponses() as mocked:
        mocked.post(SYNC_URL, status=500)
        with pytest.raises(aiohttp.ClientResponseError):
            await synchronizer.sync("ticket-1", "reply-1", {"status": "sent"})


@pytest.mark.asyncio
async def test_composite_reaches_every_target_before_failing():
    failing = RecordingSynchronizer(fail=True)
    healthy = RecordingSynchronizer()
    composite = CompositeStatusSynchronizer([failing, healthy])

    with pytest.raises(RuntimeError):
        await composite.sync("ticket-1", "reply-1", {"status": "sent"})

    assert healthy.updates == [("ticket-1", "reply-1", {"status": "sent"})]
    assert len(failing.updates) == 1
