"""Settings loader: INI file with ``ADQ_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


def load_settings(config_path: str | os.PathLike | None = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Values from the INI file win over the environment. Environment variables (all prefixed with ADQ_):
      ADQ_CONFIG - Path to config.ini file (default: config.ini)
      ADQ_LOG_LEVEL - Logging level (default: INFO)
      ADQ_DB_PATH - Database path (default: /data/delivery_queue.db)
      ADQ_HOST, ADQ_PORT - HTTP bind address (default: 0.0.0.0:8000)
      ADQ_API_TOKEN - API authentication token
      ADQ_POLL_INTERVAL - Seconds between idle polls (default: 5)
      ADQ_BATCH_SIZE - Jobs leased per poll (default: 10)
      ADQ_VISIBILITY_TIMEOUT - Seconds before a lease is considered abandoned (default: 300)
      ADQ_WORKER_ID - Worker identity (default: generated per process)
      ADQ_START_ACTIVE - Start dispatching immediately (default: True)
      ADQ_MAX_ATTEMPTS, ADQ_BACKOFF_BASE, ADQ_BACKOFF_CAP, ADQ_JITTER_FRACTION - Retry policy
      ADQ_SEND_TIMEOUT - Per attempt transport timeout (default: 30)
      ADQ_DEFAULT_PRIORITY - Priority of jobs enqueued without one (default: 100)
      ADQ_TRANSPORT - console, smtp or sendgrid (default: console)
      ADQ_MAIL_FROM - Sender address
      ADQ_SMTP_HOST, ADQ_SMTP_PORT, ADQ_SMTP_USER, ADQ_SMTP_PASSWORD, ADQ_SMTP_USE_TLS, ADQ_SMTP_START_TLS
      ADQ_SENDGRID_API_KEY, ADQ_SENDGRID_SMTP_FALLBACK
      ADQ_SYNC_URL, ADQ_SYNC_TOKEN, ADQ_SYNC_USER, ADQ_SYNC_PASSWORD - Delivery report webhook
      ADQ_LOG_DELIVERY_ACTIVITY - Log every attempt and outcome (default: False)
      ADQ_MISDIRECT_SECRET - HMAC secret signing report-misdirected links
      ADQ_PUBLIC_BASE_URL - Base URL used in report-misdirected links (default: http://localhost:8000)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token, public_base_url
      [worker] poll_interval, batch_size, visibility_timeout, worker_id, start_active
      [delivery] max_attempts, backoff_base, backoff_cap, jitter_fraction, send_timeout, default_priority
      [transport] name, mail_from
      [smtp] host, port, user, password, use_tls, start_tls
      [sendgrid] api_key, smtp_fallback
      [sync] url, token, user, password
      [suppression] misdirect_secret
      [logging] level, delivery_activity
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("ADQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"[{section}] {option} must be an integer, got {value!r}") from None

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"[{section}] {option} must be a number, got {value!r}") from None

    settings: Dict[str, Any] = {
        "log_level": get("logging", "level", env.get("ADQ_LOG_LEVEL", "INFO")),
        "db_path": get("storage", "db_path", env.get("ADQ_DB_PATH", "/data/delivery_queue.db")),
        "http_host": get("server", "host", env.get("ADQ_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", env.get("ADQ_PORT"), default=8000),
        "api_token": get("server", "api_token", env.get("ADQ_API_TOKEN")),
        "public_base_url": get("server", "public_base_url", env.get("ADQ_PUBLIC_BASE_URL", "http://localhost:8000")),
        "poll_interval": get_float("worker", "poll_interval", env.get("ADQ_POLL_INTERVAL"), default=5.0),
        "batch_size": get_int("worker", "batch_size", env.get("ADQ_BATCH_SIZE"), default=10),
        "visibility_timeout": get_float(
            "worker", "visibility_timeout", env.get("ADQ_VISIBILITY_TIMEOUT"), default=300.0
        ),
        "worker_id": get("worker", "worker_id", env.get("ADQ_WORKER_ID")),
        "start_active": get_bool("worker", "start_active", env.get("ADQ_START_ACTIVE"), default=True),
        "max_attempts": get_int("delivery", "max_attempts", env.get("ADQ_MAX_ATTEMPTS"), default=5),
        "backoff_base": get_float("delivery", "backoff_base", env.get("ADQ_BACKOFF_BASE"), default=5.0),
        "backoff_cap": get_float("delivery", "backoff_cap", env.get("ADQ_BACKOFF_CAP"), default=600.0),
        "jitter_fraction": get_float("delivery", "jitter_fraction", env.get("ADQ_JITTER_FRACTION"), default=0.3),
        "send_timeout": get_float("delivery", "send_timeout", env.get("ADQ_SEND_TIMEOUT"), default=30.0),
        "default_priority": get_int(
            "delivery", "default_priority", env.get("ADQ_DEFAULT_PRIORITY"), default=100
        ),
        "transport": get("transport", "name", env.get("ADQ_TRANSPORT", "console")),
        "mail_from": get("transport", "mail_from", env.get("ADQ_MAIL_FROM", "no-reply@example.com")),
        "smtp_host": get("smtp", "host", env.get("ADQ_SMTP_HOST")),
        "smtp_port": get_int("smtp", "port", env.get("ADQ_SMTP_PORT"), default=587),
        "smtp_user": get("smtp", "user", env.get("ADQ_SMTP_USER")),
        "smtp_password": get("smtp", "password", env.get("ADQ_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", env.get("ADQ_SMTP_USE_TLS"), default=False),
        "smtp_start_tls": get_bool("smtp", "start_tls", env.get("ADQ_SMTP_START_TLS"), default=None),
        "sendgrid_api_key": get("sendgrid", "api_key", env.get("ADQ_SENDGRID_API_KEY")),
        "sendgrid_smtp_fallback": get_bool(
            "sendgrid", "smtp_fallback", env.get("ADQ_SENDGRID_SMTP_FALLBACK"), default=False
        ),
        "sync_url": get("sync", "url", env.get("ADQ_SYNC_URL")),
        "sync_token": get("sync", "token", env.get("ADQ_SYNC_TOKEN")),
        "sync_user": get("sync", "user", env.get("ADQ_SYNC_USER")),
        "sync_password": get("sync", "password", env.get("ADQ_SYNC_PASSWORD")),
        "misdirect_secret": get("suppression", "misdirect_secret", env.get("ADQ_MISDIRECT_SECRET")),
        "log_delivery_activity": get_bool(
            "logging", "delivery_activity", env.get("ADQ_LOG_DELIVERY_ACTIVITY"), default=False
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "worker_id", "sync_url", "sync_token", "sendgrid_api_key", "misdirect_secret"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings
