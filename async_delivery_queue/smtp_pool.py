"""Lightweight asyncio-friendly SMTP connection pool."""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aiosmtplib

ServerKey = Tuple[str, int, Optional[str], Optional[str], bool, Optional[bool]]


class SMTPPool:
    """Reuse idle SMTP connections per server and credentials.

    Concurrent attempts check out distinct connections; a connection goes back
    to the idle list only when the caller finished without an error.
    """

    def __init__(self, ttl: int = 300, timeout: float = 10.0):
        """Create a pool whose idle connections live at most ``ttl`` seconds."""
        self.ttl = ttl
        self.timeout = timeout
        self.idle: Dict[ServerKey, List[Tuple[aiosmtplib.SMTP, float]]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, key: ServerKey) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        host, port, user, password, use_tls, start_tls = key
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            use_tls=use_tls,
            start_tls=start_tls,
            timeout=self.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        # aiosmtplib's own timeout does not cover the login round trip
        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            response = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False
        return response[0] == 250

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            pass

    async def _checkout(self, key: ServerKey) -> aiosmtplib.SMTP:
        while True:
            async with self.lock:
                entries = self.idle.get(key) or []
                entry = entries.pop() if entries else None
            if entry is None:
                return await self._connect(key)
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._quit(smtp)

    @asynccontextmanager
    async def connection(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        *,
        use_tls: bool,
        start_tls: Optional[bool] = None,
    ) -> AsyncIterator[aiosmtplib.SMTP]:
        """Yield a live connection, returning it to the pool afterwards."""
        key: ServerKey = (host, int(port), user, password, bool(use_tls), start_tls)
        smtp = await self._checkout(key)
        try:
            yield smtp
        except BaseException:
            await self._quit(smtp)
            raise
        async with self.lock:
            self.idle.setdefault(key, []).append((smtp, time.time()))

    async def cleanup(self) -> None:
        """Close idle connections that expired or stopped answering."""
        now = time.time()
        async with self.lock:
            items = [(key, entry) for key, entries in self.idle.items() for entry in entries]
            self.idle = {}

        keep: List[Tuple[ServerKey, Tuple[aiosmtplib.SMTP, float]]] = []
        for key, (smtp, last_used) in items:
            if (now - last_used) <= self.ttl and await self._is_alive(smtp):
                keep.append((key, (smtp, last_used)))
            else:
                await self._quit(smtp)

        async with self.lock:
            for key, entry in keep:
                self.idle.setdefault(key, []).append(entry)

    async def close(self) -> None:
        """Close every idle connection."""
        async with self.lock:
            items = [smtp for entries in self.idle.values() for smtp, _ in entries]
            self.idle = {}
        for smtp in items:
            await self._quit(smtp)
