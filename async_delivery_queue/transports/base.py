"""Delivery transport interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import DeliveryReceipt


class DeliveryTransport(ABC):
    """Capability that hands one message to a provider.

    Implementations raise :class:`~async_delivery_queue.errors.DeliveryError`
    (or one of its subclasses) with ``permanent`` set according to the
    provider's failure semantics. Anything else they raise is treated as a
    transient failure by the executor.
    """

    name: str = "transport"

    @abstractmethod
    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        """Deliver a plain text message and return the provider receipt."""

    async def close(self) -> None:
        """Release network resources held by the transport."""
        return None

    async def cleanup(self) -> None:
        """Periodic maintenance hook, e.g. dropping idle pooled connections."""
        return None
