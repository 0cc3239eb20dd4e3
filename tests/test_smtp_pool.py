import asyncio

import pytest

from async_delivery_queue.smtp_pool import SMTPPool


class DummySMTP:
    def __init__(self, hostname, port, start_tls=None, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.alive = True

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise OSError("Connection dead")
        return 250, b"OK"

    async def quit(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("async_delivery_queue.smtp_pool.aiosmtplib.SMTP", factory)
    return created


@pytest.mark.asyncio
async def test_connection_is_reused_after_release(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    async with pool.connection("smtp.local", 25, "user", "pass", use_tls=False) as smtp1:
        pass
    async with pool.connection("smtp.local", 25, "user", "pass", use_tls=False) as smtp2:
        pass

    assert smtp1 is smtp2
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_concurrent_checkouts_get_distinct_connections(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    seen = []

    async def use():
        async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp:
            seen.append(smtp)
            await asyncio.sleep(0.01)

    await asyncio.gather(use(), use(), use())

    assert len({id(s) for s in seen}) == 3
    assert sum(len(entries) for entries in pool.idle.values()) == 3


@pytest.mark.asyncio
async def test_credentials_and_servers_use_separate_slots(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    async with pool.connection("smtp.local", 25, "a", "x", use_tls=False) as first:
        pass
    async with pool.connection("smtp.local", 25, "b", "y", use_tls=False) as second:
        pass
    async with pool.connection("smtp.other", 465, None, None, use_tls=True) as third:
        pass

    assert len({id(first), id(second), id(third)}) == 3
    assert third.use_tls is True


@pytest.mark.asyncio
async def test_failed_connection_is_not_returned(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    with pytest.raises(RuntimeError):
        async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp:
            raise RuntimeError("send failed")

    assert smtp.closed is True
    assert pool.idle == {}


@pytest.mark.asyncio
async def test_expired_connection_is_replaced(patch_aiosmtplib):
    pool = SMTPPool(ttl=-1)
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp1:
        pass
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp2:
        pass

    assert smtp1.closed is True
    assert smtp2 is not smtp1


@pytest.mark.asyncio
async def test_dead_connection_is_replaced_on_checkout(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp1:
        pass
    smtp1.alive = False
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp2:
        pass

    assert smtp2 is not smtp1
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as dead:
        pass
    async with pool.connection("smtp.other", 25, None, None, use_tls=False) as alive:
        pass
    dead.alive = False

    await pool.cleanup()

    assert dead.closed is True
    assert alive.closed is False
    assert [smtp for entries in pool.idle.values() for smtp, _ in entries] == [alive]


@pytest.mark.asyncio
async def test_close_quits_idle_connections(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp:
        pass

    await pool.close()

    assert smtp.closed is True
    assert pool.idle == {}
