from __future__ import annotations

from imsg_bridge.pairing import ClaimRateLimiter


def test_five_attempts_allowed_then_denied(clock):
    limiter = ClaimRateLimiter(clock=clock)

    results = [limiter.check("cli") for _ in range(7)]

    assert results == [True, True, True, True, True, False, False]
    assert limiter.window("cli").count == 5


def test_window_resets_instead_of_decaying(clock):
    limiter = ClaimRateLimiter(clock=clock)
    for _ in range(6):
        limiter.check("cli")

    clock.advance(60 * 1000)
    assert limiter.check("cli") is False

    clock.advance(1)
    assert limiter.check("cli") is True
    window = limiter.window("cli")
    assert window.count == 1
    assert window.window_start_ms == clock.now


def test_sources_are_counted_independently(clock):
    limiter = ClaimRateLimiter(clock=clock)
    for _ in range(5):
        limiter.check("cli")

    assert limiter.check("cli") is False
    assert limiter.check("api") is True


def test_sweep_removes_only_stale_windows(clock):
    limiter = ClaimRateLimiter(clock=clock)
    limiter.check("old")
    clock.advance(30 * 1000)
    limiter.check("new")
    clock.advance(31 * 1000)

    assert limiter.sweep() == 1
    assert limiter.window("old") is None
    assert limiter.window("new") is not None
