"""Delivery transports and the factory selecting one from settings.

Available transports:

- ``console``: log only, for development and test mode
- ``smtp``: aiosmtplib relay with connection pooling
- ``sendgrid``: SendGrid v3 HTTP API, optional SMTP fallback
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping

from .base import DeliveryTransport
from .console import ConsoleTransport
from .sendgrid import SendGridTransport
from .smtp import SmtpTransport, classify_smtp_error

__all__ = [
    "DeliveryTransport",
    "ConsoleTransport",
    "SmtpTransport",
    "SendGridTransport",
    "classify_smtp_error",
    "build_transport",
    "TRANSPORTS",
]


def _build_console(settings: Mapping[str, Any]) -> DeliveryTransport:
    return ConsoleTransport(mail_from=settings.get("mail_from") or "no-reply@example.com")


def _build_smtp(settings: Mapping[str, Any]) -> DeliveryTransport:
    return SmtpTransport(
        host=settings.get("smtp_host"),
        port=int(settings.get("smtp_port") or 587),
        user=settings.get("smtp_user"),
        password=settings.get("smtp_password"),
        use_tls=bool(settings.get("smtp_use_tls")),
        start_tls=settings.get("smtp_start_tls"),
        mail_from=settings.get("mail_from") or "no-reply@example.com",
    )


def _build_sendgrid(settings: Mapping[str, Any]) -> DeliveryTransport:
    fallback = None
    if settings.get("sendgrid_smtp_fallback") and settings.get("smtp_host"):
        fallback = _build_smtp(settings)
    return SendGridTransport(
        api_key=settings.get("sendgrid_api_key"),
        mail_from=settings.get("mail_from") or "no-reply@example.com",
        timeout=float(settings.get("send_timeout") or 30.0),
        fallback=fallback,
    )


TRANSPORTS: Dict[str, Callable[[Mapping[str, Any]], DeliveryTransport]] = {
    "console": _build_console,
    "smtp": _build_smtp,
    "sendgrid": _build_sendgrid,
}


def build_transport(settings: Mapping[str, Any]) -> DeliveryTransport:
    """Instantiate the transport named by ``settings["transport"]``."""
    name = str(settings.get("transport") or "console").strip().lower()
    try:
        factory = TRANSPORTS[name]
    except KeyError:
        raise ValueError(f"Unsupported transport: {name}") from None
    return factory(settings)
