"""Transport that only logs messages. Used for development and test mode."""

from __future__ import annotations

from email.utils import make_msgid
from typing import List, Tuple

from ..logger import get_logger
from ..models import DeliveryReceipt
from .base import DeliveryTransport


class ConsoleTransport(DeliveryTransport):
    name = "console"

    def __init__(self, *, mail_from: str = "no-reply@example.com", logger=None):
        self.mail_from = mail_from
        self.logger = logger or get_logger("AsyncDeliveryQueue.console")
        self.outbox: List[Tuple[str, str, str]] = []

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        domain = self.mail_from.rpartition("@")[2] or None
        message_id = make_msgid(domain=domain)
        self.outbox.append((recipient, subject, body))
        self.logger.info("Console delivery to %s (subject=%r, message_id=%s)", recipient, subject, message_id)
        return DeliveryReceipt(provider=self.name, provider_message_id=message_id)
