"""Propagation of delivery status into the originating (parent) record.

The job row is authoritative. The parent's delivery sub-field is a read
optimised projection that may lag; callers treat synchronisation as best
effort and never roll back a job transition because of it.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import aiohttp

from .logger import get_logger
from .persistence import Persistence

StatusUpdate = Mapping[str, Any]


class StatusSynchronizer(ABC):
    @abstractmethod
    async def sync(self, parent_ref: str, sub_ref: str, update: StatusUpdate) -> None:
        """Write ``update`` into the delivery sub-field of the parent record."""


class RecordStatusSynchronizer(StatusSynchronizer):
    """Store the projection in the ``deliveries`` table next to the jobs."""

    def __init__(self, persistence: Persistence, clock: Optional[Callable[[], float]] = None):
        self.persistence = persistence
        self._clock = clock or time.time

    async def sync(self, parent_ref: str, sub_ref: str, update: StatusUpdate) -> None:
        await self.persistence.upsert_delivery(parent_ref, sub_ref, update, self._clock())


class WebhookStatusSynchronizer(StatusSynchronizer):
    """POST delivery reports to the system that owns the parent records.

    Authentication is a bearer token when ``token`` is set, otherwise HTTP
    basic auth when ``user`` is set.
    """

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        logger=None,
    ):
        self.url = url
        self.token = token
        self.user = user
        self.password = password
        self.timeout = timeout
        self.logger = logger or get_logger("AsyncDeliveryQueue.sync")

    @staticmethod
    def _serialise(parent_ref: str, sub_ref: str, update: StatusUpdate) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"parent_ref": parent_ref, "sub_ref": sub_ref}
        for key, value in update.items():
            payload[key] = value.value if isinstance(value, Enum) else value
        return payload

    async def sync(self, parent_ref: str, sub_ref: str, update: StatusUpdate) -> None:
        headers: Dict[str, str] = {}
        auth = None
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.user:
            auth = aiohttp.BasicAuth(self.user, self.password or "")
        body = {"delivery_report": [self._serialise(parent_ref, sub_ref, update)]}
        self.logger.debug("Posting delivery report for %s/%s to %s", parent_ref, sub_ref, self.url)
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.url, json=body, auth=auth, headers=headers or None) as resp:
                resp.raise_for_status()


class CompositeStatusSynchronizer(StatusSynchronizer):
    """Fan an update out to several synchronizers.

    Every target is attempted; the first failure is re-raised afterwards.
    """

    def __init__(self, targets: Iterable[StatusSynchronizer]):
        self.targets = list(targets)

    async def sync(self, parent_ref: str, sub_ref: str, update: StatusUpdate) -> None:
        results = await asyncio.gather(
            *(target.sync(parent_ref, sub_ref, update) for target in self.targets),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
