"""
Unit tests for the fixed-window rate limiter
"""

import threading

import pytest

from keygate.services.rate_limiter import (
    FailedAttemptLimiter,
    InMemoryRateWindowStore,
    RateLimiter,
    RateLimitPolicy,
)


class TestRateLimiter:
    """Test cases for RateLimiter"""

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter(RateLimitPolicy(8, 15), clock=clock, name="validate")

    def test_admits_up_to_limit(self, limiter):
        """8 admissions in the window, the 9th is refused"""
        results = [limiter.admit("1.2.3.4") for _ in range(9)]
        assert results == [True] * 8 + [False]

    def test_new_window_after_elapsed(self, limiter, clock):
        for _ in range(9):
            limiter.admit("1.2.3.4")

        clock.advance(16)

        assert limiter.admit("1.2.3.4") is True
        assert limiter.remaining("1.2.3.4") == 7

    def test_window_boundary_is_exclusive(self, limiter, clock):
        """Exactly W seconds later the old window still applies"""
        for _ in range(8):
            limiter.admit("1.2.3.4")
        clock.advance(15)
        assert limiter.admit("1.2.3.4") is False
        clock.advance(0.001)
        assert limiter.admit("1.2.3.4") is True

    def test_rejections_do_not_extend_window(self, limiter, clock):
        for _ in range(8):
            limiter.admit("1.2.3.4")
        for _ in range(5):
            clock.advance(2)
            assert limiter.admit("1.2.3.4") is False
        clock.advance(6)
        assert limiter.admit("1.2.3.4") is True

    def test_clients_are_independent(self, limiter):
        for _ in range(8):
            limiter.admit("1.1.1.1")
        assert limiter.admit("1.1.1.1") is False
        assert limiter.admit("2.2.2.2") is True

    def test_retry_after(self, limiter, clock):
        assert limiter.retry_after("1.2.3.4") == 0
        limiter.admit("1.2.3.4")
        clock.advance(10)
        assert limiter.retry_after("1.2.3.4") == 5

    def test_reset(self, limiter):
        for _ in range(9):
            limiter.admit("1.2.3.4")
        limiter.reset("1.2.3.4")
        assert limiter.admit("1.2.3.4") is True

    def test_shared_store_between_limiters(self, clock):
        store = InMemoryRateWindowStore()
        first = RateLimiter(RateLimitPolicy(2, 15), store=store, clock=clock)
        second = RateLimiter(RateLimitPolicy(2, 15), store=store, clock=clock)
        assert first.admit("c") is True
        assert second.admit("c") is True
        assert first.admit("c") is False

    def test_purge_removes_stale_windows(self, clock):
        store = InMemoryRateWindowStore()
        store.hit("old", clock(), 15, 8)
        clock.advance(100)
        store.hit("new", clock(), 15, 8)
        assert store.purge(clock() - 15) == 1
        assert store.peek("old") is None
        assert store.peek("new") is not None

    def test_concurrent_admissions_never_exceed_limit(self):
        limiter = RateLimiter(RateLimitPolicy(50, 60))
        admitted = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                if limiter.admit("burst"):
                    with lock:
                        admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(admitted) == 50

    @pytest.mark.parametrize("requests,window", [(0, 15), (8, 0), (-1, 1)])
    def test_invalid_policy(self, requests, window):
        with pytest.raises(ValueError):
            RateLimitPolicy(requests, window)


class TestFailedAttemptLimiter:
    """Test cases for operator lockout"""

    @pytest.fixture
    def lockout(self, clock):
        return FailedAttemptLimiter(max_failures=3, window_seconds=900, clock=clock)

    def test_blocks_after_max_failures(self, lockout):
        for _ in range(2):
            lockout.record_failure("1.2.3.4")
        assert lockout.is_blocked("1.2.3.4") is False
        lockout.record_failure("1.2.3.4")
        assert lockout.is_blocked("1.2.3.4") is True

    def test_unblocks_after_window(self, lockout, clock):
        for _ in range(3):
            lockout.record_failure("1.2.3.4")
        clock.advance(901)
        assert lockout.is_blocked("1.2.3.4") is False

    def test_clear(self, lockout):
        for _ in range(3):
            lockout.record_failure("1.2.3.4")
        lockout.clear("1.2.3.4")
        assert lockout.is_blocked("1.2.3.4") is False

    def test_retry_after(self, lockout, clock):
        for _ in range(3):
            lockout.record_failure("1.2.3.4")
        clock.advance(100)
        assert lockout.retry_after("1.2.3.4") == 800
