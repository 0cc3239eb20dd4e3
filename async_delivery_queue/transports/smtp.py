"""SMTP delivery through aiosmtplib."""

from __future__ import annotations

import asyncio
import ssl
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Optional

import aiosmtplib

from ..errors import DeliveryError
from ..models import DeliveryReceipt
from ..smtp_pool import SMTPPool
from .base import DeliveryTransport

TEMPORARY_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
)


def _smtp_code(exc: BaseException) -> Optional[int]:
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [refused.code for refused in exc.recipients if getattr(refused, "code", None)]
        return max(codes) if codes else None
    code = getattr(exc, "code", None)
    return code if isinstance(code, int) else None


def classify_smtp_error(exc: BaseException) -> DeliveryError:
    """Translate an SMTP failure into a :class:`DeliveryError`.

    Authentication failures, TLS mismatches, unsupported extensions and 5xx
    replies are permanent. 4xx replies, disconnects, connect errors and
    timeouts are transient. Unknown failures default to transient.
    """
    code = _smtp_code(exc)
    text = f"{exc} (SMTP {code})" if code else (str(exc) or exc.__class__.__name__)

    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return DeliveryError(f"SMTP authentication failed: {text}", permanent=True, status_code=code)
    if isinstance(exc, ssl.SSLError):
        return DeliveryError(f"SMTP TLS negotiation failed: {text}", permanent=True)
    if isinstance(exc, aiosmtplib.SMTPNotSupported):
        return DeliveryError(f"SMTP server configuration mismatch: {text}", permanent=True)
    if code is not None:
        if 500 <= code < 600:
            return DeliveryError(f"SMTP rejected message: {text}", permanent=True, status_code=code)
        if 400 <= code < 500:
            return DeliveryError(f"SMTP temporary failure: {text}", permanent=False, status_code=code)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return DeliveryError(f"SMTP connection failure: {text}", permanent=False)

    lowered = text.lower()
    if any(pattern in lowered for pattern in TEMPORARY_PATTERNS):
        return DeliveryError(f"SMTP temporary failure: {text}", permanent=False, status_code=code)
    return DeliveryError(f"SMTP failure: {text}", permanent=False, status_code=code)


class SmtpTransport(DeliveryTransport):
    """Send plain text mail through one SMTP relay."""

    name = "smtp"

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        start_tls: Optional[bool] = None,
        mail_from: str = "no-reply@example.com",
        pool: Optional[SMTPPool] = None,
    ):
        if not host:
            raise ValueError("SMTP transport requires a host")
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = bool(use_tls)
        self.start_tls = start_tls
        self.mail_from = mail_from
        self.pool = pool or SMTPPool()

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.mail_from
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=False)
        domain = self.mail_from.rpartition("@")[2] or None
        msg["Message-ID"] = make_msgid(domain=domain)
        msg.set_content(body)
        return msg

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        msg = self.build_message(recipient, subject, body)
        try:
            async with self.pool.connection(
                self.host,
                self.port,
                self.user,
                self.password,
                use_tls=self.use_tls,
                start_tls=self.start_tls,
            ) as smtp:
                await smtp.send_message(msg, sender=self.mail_from, recipients=[recipient])
        except DeliveryError:
            raise
        except Exception as exc:
            raise classify_smtp_error(exc) from exc
        return DeliveryReceipt(provider=self.name, provider_message_id=msg["Message-ID"])

    async def close(self) -> None:
        await self.pool.close()

    async def cleanup(self) -> None:
        await self.pool.cleanup()
