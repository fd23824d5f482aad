"""Tests for the per-device sliding-window rate limiter."""
import threading

from rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def test_accepts_up_to_ceiling_then_rejects():
    limiter = RateLimiter(max_requests=60, window_seconds=60, clock=FakeClock())

    accepted = [limiter.allow("dev-1") for _ in range(60)]
    assert all(accepted)
    assert limiter.allow("dev-1") is False

    allowed, reason = limiter.is_allowed("dev-1")
    assert allowed is False
    assert "Rate limit exceeded" in reason
    assert limiter.get_stats("dev-1") == {"requests_in_window": 60, "violations": 2}


def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=3, window_seconds=60, clock=clock)

    for _ in range(3):
        assert limiter.allow("dev-1")
        clock.advance(10)
    assert limiter.allow("dev-1") is False

    # First request was at t=0, now t=60: it has left the window
    clock.advance(30)
    assert limiter.allow("dev-1") is True
    assert limiter.allow("dev-1") is False


def test_never_more_than_ceiling_in_any_rolling_window():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=60, window_seconds=60, clock=clock)
    accepted_at = []

    for _ in range(600):
        if limiter.allow("dev-1"):
            accepted_at.append(clock.now)
        clock.advance(0.25)

    for start in accepted_at:
        in_window = [t for t in accepted_at if start <= t < start + 60]
        assert len(in_window) <= 60


def test_devices_are_independent():
    limiter = RateLimiter(max_requests=2, window_seconds=60, clock=FakeClock())
    assert limiter.allow("dev-1")
    assert limiter.allow("dev-1")
    assert limiter.allow("dev-1") is False
    assert limiter.allow("dev-2") is True


def test_concurrent_calls_never_exceed_ceiling():
    limiter = RateLimiter(max_requests=60, window_seconds=60)
    results = []
    results_lock = threading.Lock()

    def hammer():
        local = [limiter.allow("dev-1") for _ in range(25)]
        with results_lock:
            results.extend(local)

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 200
    assert sum(results) == 60


def test_rejects_closed_on_internal_error():
    def broken_clock():
        raise RuntimeError("clock unavailable")

    limiter = RateLimiter(clock=broken_clock)
    allowed, reason = limiter.is_allowed("dev-1")
    assert allowed is False
    assert reason == "Rate limiter unavailable"
    assert limiter.allow("dev-1") is False


def test_cleanup_forgets_idle_devices():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock)
    limiter.allow("dev-1")
    limiter.allow("dev-2")
    clock.advance(61)
    limiter.allow("dev-2")

    assert limiter.cleanup() == 1
    assert limiter.get_stats("dev-2")["requests_in_window"] == 1


def test_reset_clears_counters():
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
    assert limiter.allow("dev-1")
    assert limiter.allow("dev-1") is False
    limiter.reset()
    assert limiter.allow("dev-1") is True


def test_cleanup_forgets_violations_of_idle_devices():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
    for index in range(50):
        limiter.allow(f"bogus-{index}")
        limiter.allow(f"bogus-{index}")
    assert len(limiter.violations) == 50

    clock.advance(61)
    assert limiter.cleanup() == 50
    assert dict(limiter.violations) == {}
