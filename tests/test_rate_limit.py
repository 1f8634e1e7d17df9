import pytest

from campaign_mailer.rate_limit import RateLimiter


class FakeTime:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


def make_limiter(fake, **kwargs):
    return RateLimiter(clock=fake.clock, sleep=fake.sleep, **kwargs)


def test_rate_limiter_defers_when_window_full():
    fake = FakeTime()
    limiter = make_limiter(fake, max_per_window=2, window_seconds=1.0)

    assert limiter.check_and_plan("acc") == 0.0
    limiter.log_send("acc")
    fake.now += 0.25
    limiter.log_send("acc")

    assert limiter.check_and_plan("acc") == pytest.approx(0.75)
    fake.now += 0.5
    assert limiter.check_and_plan("acc") == pytest.approx(0.25)
    fake.now += 0.5
    assert limiter.check_and_plan("acc") == 0.0


def test_rate_limiter_keys_are_independent():
    fake = FakeTime()
    limiter = make_limiter(fake, max_per_window=1)
    limiter.log_send("a")

    assert limiter.check_and_plan("a") > 0
    assert limiter.check_and_plan("b") == 0.0


def test_rate_limiter_rejects_zero_limit():
    with pytest.raises(ValueError):
        RateLimiter(max_per_window=0)


@pytest.mark.asyncio
async def test_acquire_spreads_sends_over_windows():
    fake = FakeTime()
    limiter = make_limiter(fake, max_per_window=3, window_seconds=1.0)

    times = []
    for _ in range(7):
        await limiter.acquire("smtp")
        times.append(fake.now)

    assert times == [100.0, 100.0, 100.0, 101.0, 101.0, 101.0, 102.0]
    assert fake.sleeps == [1.0, 1.0]


@pytest.mark.asyncio
async def test_forget_drops_history():
    fake = FakeTime()
    limiter = make_limiter(fake, max_per_window=1)
    await limiter.acquire("smtp")
    limiter.forget("smtp")

    await limiter.acquire("smtp")
    assert fake.sleeps == []
