from notifywise.rate_limit import SlidingWindowRateLimiter


def make_limiter(limit=2, window_seconds=60):
    clock = {"now": 1000.0}
    limiter = SlidingWindowRateLimiter(limit, window_seconds, clock=lambda: clock["now"])
    return limiter, clock


def test_allows_up_to_limit_then_blocks():
    limiter, clock = make_limiter()

    assert limiter.hit("1.2.3.4:212612345678") is True
    assert limiter.hit("1.2.3.4:212612345678") is True
    assert limiter.hit("1.2.3.4:212612345678") is False
    assert limiter.hit("5.6.7.8:212612345678") is True


def test_window_slides_and_reports_retry_after():
    limiter, clock = make_limiter()
    limiter.hit("k")
    clock["now"] += 30
    limiter.hit("k")

    assert limiter.hit("k") is False
    assert limiter.retry_after("k") == 31

    clock["now"] += 30
    assert limiter.hit("k") is True
    assert limiter.hit("k") is False


def test_reset_clears_history():
    limiter, _ = make_limiter(limit=1)
    limiter.hit("k")
    assert limiter.retry_after("k") > 0

    limiter.reset()

    assert limiter.retry_after("k") == 0
    assert limiter.hit("k") is True
