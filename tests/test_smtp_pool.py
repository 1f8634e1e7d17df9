from email.message import EmailMessage

import aiosmtplib
import pytest

from campaign_mailer.rate_limit import RateLimiter
from campaign_mailer.smtp_pool import SMTPPool, SmtpParams


class DummySMTP:
    def __init__(self, hostname, port, start_tls=False, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.alive = True
        self.sent = []
        self.fail_with = None

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise RuntimeError("Connection dead")
        return 250, b"OK"

    async def send_message(self, message):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)
        return {}, "OK"

    async def quit(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("campaign_mailer.smtp_pool.aiosmtplib.SMTP", factory)
    return created


def _message():
    msg = EmailMessage()
    msg["From"] = "sender@example.com"
    msg["To"] = "rcpt@example.com"
    msg["Subject"] = "Hi"
    msg.set_content("body")
    return msg


PLAIN = SmtpParams("smtp.local", 25, "user", "pass", False)


@pytest.mark.asyncio
async def test_send_reuses_connection_for_same_credentials(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    await pool.send_message(PLAIN, _message())
    await pool.send_message(PLAIN, _message())

    assert len(patch_aiosmtplib) == 1
    smtp = patch_aiosmtplib[0]
    assert smtp.login_credentials == ("user", "pass")
    assert len(smtp.sent) == 2


@pytest.mark.asyncio
async def test_different_credentials_get_separate_connections(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    await pool.send_message(PLAIN, _message())
    await pool.send_message(PLAIN._replace(user="other"), _message())

    assert len(patch_aiosmtplib) == 2
    assert set(pool.pool) == {PLAIN, PLAIN._replace(user="other")}


@pytest.mark.asyncio
async def test_expired_connection_is_replaced(patch_aiosmtplib):
    pool = SMTPPool(ttl=-1)
    await pool.send_message(PLAIN, _message())
    await pool.send_message(PLAIN, _message())

    first, second = patch_aiosmtplib
    assert first.closed is True
    assert second is not first


@pytest.mark.asyncio
async def test_dead_connection_is_replaced(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    await pool.send_message(PLAIN, _message())
    patch_aiosmtplib[0].alive = False

    await pool.send_message(PLAIN, _message())

    assert len(patch_aiosmtplib) == 2
    assert patch_aiosmtplib[0].closed is True


@pytest.mark.parametrize(
    "port,secure,use_tls,start_tls",
    [
        (465, True, True, False),
        (587, True, False, True),
        (25, False, False, False),
    ],
)
@pytest.mark.asyncio
async def test_tls_mode_follows_port_and_secure_flag(patch_aiosmtplib, port, secure, use_tls, start_tls):
    pool = SMTPPool(ttl=30)
    await pool.send_message(SmtpParams("smtp.secure", port, None, None, secure), _message())

    smtp = patch_aiosmtplib[0]
    assert smtp.use_tls is use_tls
    assert smtp.start_tls is start_tls
    assert smtp.login_credentials is None


@pytest.mark.asyncio
async def test_connection_error_evicts_and_propagates(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    await pool.send_message(PLAIN, _message())
    smtp = patch_aiosmtplib[0]
    smtp.fail_with = aiosmtplib.SMTPServerDisconnected("gone")

    with pytest.raises(aiosmtplib.SMTPServerDisconnected):
        await pool.send_message(PLAIN, _message())

    assert smtp.closed is True
    assert pool.pool[PLAIN].smtp is None


@pytest.mark.asyncio
async def test_login_failure_closes_new_connection(monkeypatch, patch_aiosmtplib):
    async def rejected_login(self, user, password):
        raise aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Authentication failed")

    monkeypatch.setattr(DummySMTP, "login", rejected_login)
    pool = SMTPPool(ttl=30)

    for _ in range(2):
        with pytest.raises(aiosmtplib.SMTPAuthenticationError):
            await pool.send_message(PLAIN, _message())

    assert len(patch_aiosmtplib) == 2
    assert all(smtp.connected and smtp.closed for smtp in patch_aiosmtplib)
    assert pool.pool[PLAIN].smtp is None

@pytest.mark.asyncio
async def test_recipient_refusal_keeps_connection(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    await pool.send_message(PLAIN, _message())
    smtp = patch_aiosmtplib[0]
    smtp.fail_with = aiosmtplib.SMTPRecipientsRefused([])

    with pytest.raises(aiosmtplib.SMTPRecipientsRefused):
        await pool.send_message(PLAIN, _message())

    assert smtp.closed is False
    assert pool.pool[PLAIN].smtp is smtp


@pytest.mark.asyncio
async def test_sends_wait_for_rate_limit(patch_aiosmtplib):
    clock = {"now": 0.0}
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)
        clock["now"] += delay

    limiter = RateLimiter(max_per_window=3, window_seconds=1.0, clock=lambda: clock["now"], sleep=fake_sleep)
    pool = SMTPPool(ttl=30, rate_limiter=limiter)

    for _ in range(4):
        await pool.send_message(PLAIN, _message())

    assert sleeps == [1.0]
    assert len(patch_aiosmtplib[0].sent) == 4


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(monkeypatch, patch_aiosmtplib):
    pool = SMTPPool(ttl=1)
    await pool.send_message(PLAIN, _message())
    smtp = patch_aiosmtplib[0]

    async def fake_is_alive(_smtp):
        return False

    monkeypatch.setattr(pool, "_is_alive", fake_is_alive)

    await pool.cleanup()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_close_quits_every_connection(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    await pool.send_message(PLAIN, _message())
    await pool.send_message(PLAIN._replace(port=2525), _message())

    await pool.close()

    assert all(smtp.closed for smtp in patch_aiosmtplib)
    assert pool.pool == {}
