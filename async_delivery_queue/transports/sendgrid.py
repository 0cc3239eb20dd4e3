"""SendGrid v3 HTTP API transport."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from ..errors import DeliveryError
from ..logger import get_logger
from ..models import DeliveryReceipt
from .base import DeliveryTransport

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"
PERMANENT_STATUSES = frozenset({400, 401, 403, 404, 413})


def classify_http_status(status: int) -> bool:
    """Return ``True`` when an HTTP status from the provider is permanent.

    Content, recipient and credential rejections are permanent; rate limiting
    (429), server errors and anything unexpected are retried.
    """
    return status in PERMANENT_STATUSES


class SendGridTransport(DeliveryTransport):
    """Deliver through the SendGrid mail send endpoint.

    When ``fallback`` is given, transient SendGrid failures are retried once
    through it immediately and the receipt is tagged accordingly.
    """

    name = "sendgrid"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        mail_from: str = "no-reply@example.com",
        api_url: str = SENDGRID_API_URL,
        timeout: float = 30.0,
        fallback: Optional[DeliveryTransport] = None,
        logger=None,
    ):
        self.api_key = api_key
        self.mail_from = mail_from
        self.api_url = api_url
        self.timeout = timeout
        self.fallback = fallback
        self.logger = logger or get_logger("AsyncDeliveryQueue.sendgrid")

    def _payload(self, recipient: str, subject: str, body: str) -> Dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.mail_from},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }

    async def _post(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        if not self.api_key:
            raise DeliveryError("Missing SendGrid API key", permanent=True)
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(
                    self.api_url,
                    json=self._payload(recipient, subject, body),
                    headers=headers,
                ) as resp:
                    if resp.status >= 400:
                        detail = (await resp.text())[:500]
                        raise DeliveryError(
                            f"SendGrid send failed with HTTP {resp.status}: {detail}",
                            permanent=classify_http_status(resp.status),
                            status_code=resp.status,
                        )
                    message_id = resp.headers.get("X-Message-Id")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryError(f"SendGrid unreachable: {exc or exc.__class__.__name__}", permanent=False) from exc
        return DeliveryReceipt(provider=self.name, provider_message_id=message_id)

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        try:
            return await self._post(recipient, subject, body)
        except DeliveryError as exc:
            if exc.permanent or self.fallback is None:
                raise
            self.logger.warning("SendGrid transient failure, trying fallback transport: %s", exc)
            try:
                receipt = await self.fallback.send(recipient, subject, body)
            except DeliveryError as fallback_exc:
                raise DeliveryError(
                    f"SendGrid and fallback failed: {fallback_exc}",
                    permanent=False,
                    status_code=exc.status_code,
                ) from fallback_exc
            return DeliveryReceipt(
                provider=f"{self.name}_{receipt.provider}_fallback",
                provider_message_id=receipt.provider_message_id,
            )

    async def close(self) -> None:
        if self.fallback is not None:
            await self.fallback.close()

    async def cleanup(self) -> None:
        if self.fallback is not None:
            await self.fallback.cleanup()
