from typing import Any, Dict, List, Optional, Tuple

import pytest

from async_delivery_queue.dispatcher import Dispatcher
from async_delivery_queue.executor import DeliveryExecutor
from async_delivery_queue.models import DeliveryReceipt
from async_delivery_queue.persistence import Persistence
from async_delivery_queue.prometheus import DeliveryMetrics
from async_delivery_queue.retry import RetryPolicy
from async_delivery_queue.synchronizer import StatusSynchronizer
from async_delivery_queue.transports.base import DeliveryTransport

START_TS = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START_TS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSynchronizer(StatusSynchronizer):
    def __init__(self, fail: bool = False):
        self.updates: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail = fail

    async def sync(self, parent_ref, sub_ref, update):
        self.updates.append((parent_ref, sub_ref, dict(update)))
        if self.fail:
            raise RuntimeError("parent store unavailable")

    def statuses(self) -> List[str]:
        return [getattr(u["status"], "value", u["status"]) for _, _, u in self.updates]


class ScriptedTransport(DeliveryTransport):
    """Transport replaying a list of outcomes: exceptions are raised, receipts returned.

    Once the script is exhausted every call succeeds.
    """

    name = "scripted"

    def __init__(self, outcomes: Optional[List[Any]] = None):
        self.outcomes = list(outcomes or [])
        self.calls: List[Tuple[str, str, str]] = []
        self.closed = False

    async def send(self, recipient, subject, body):
        self.calls.append((recipient, subject, body))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return DeliveryReceipt(provider=self.name, provider_message_id=f"<{len(self.calls)}@test>")
        return outcome

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sync():
    return RecordingSynchronizer()


@pytest.fixture
def store(tmp_path):
    return Persistence(str(tmp_path / "queue.db"))


@pytest.fixture
def make_entry(clock):
    """Return a factory of ``insert_job`` entries with distinct dedupe keys."""

    def factory(n: int = 1, **overrides):
        entry = {
            "id": f"job-{n}",
            "parent_ref": "ticket-1",
            "sub_ref": f"reply-{n}",
            "recipient": f"user{n}@example.com",
            "subject": "Re: your request",
            "body": f"Body {n}",
            "max_attempts": 5,
            "dedupe_key": f"key-{n}",
            "priority": 100,
            "queued_at": clock() + n * 0.001,
        }
        entry.update(overrides)
        return entry

    return factory


@pytest.fixture
def make_worker(store, clock, sync):
    """Build a dispatcher/executor pair sharing the test store, clock and synchronizer."""

    def factory(transport: DeliveryTransport, worker_id: str = "worker-1", **kwargs) -> Dispatcher:
        metrics = kwargs.pop("metrics", None) or DeliveryMetrics()
        executor = DeliveryExecutor(
            persistence=store,
            transport=transport,
            synchronizer=kwargs.pop("synchronizer", sync),
            worker_id=worker_id,
            policy=kwargs.pop("policy", RetryPolicy()),
            metrics=metrics,
            send_timeout=kwargs.pop("send_timeout", 5.0),
            clock=clock,
            rand=lambda: 0.0,
        )
        return Dispatcher(
            persistence=store,
            executor=executor,
            worker_id=worker_id,
            metrics=metrics,
            clock=clock,
            **kwargs,
        )

    return factory
