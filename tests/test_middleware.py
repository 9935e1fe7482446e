"""
Tests for the rate limiter, concurrency limiter and admission guard.
"""

import asyncio

import pytest
from starlette.requests import Request

from logo_resizer_backend.errors import ConcurrencyLimitExceeded, RateLimitExceeded
from logo_resizer_backend.middleware import (
    AdmissionGuard,
    ConcurrencyLimiter,
    RateLimiter,
    client_identity,
)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _request(headers=None, client=("198.51.100.4", 5123)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/resize",
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestClientIdentity:
    def test_uses_first_forwarded_entry(self):
        request = _request({"X-Forwarded-For": " 203.0.113.9 , 10.0.0.2"})
        assert client_identity(request) == "203.0.113.9"

    def test_falls_back_to_peer_address(self):
        assert client_identity(_request()) == "198.51.100.4"

    def test_empty_forwarded_header_falls_back(self):
        assert client_identity(_request({"X-Forwarded-For": ""})) == "198.51.100.4"

    def test_unknown_without_peer(self):
        assert client_identity(_request(client=None)) == "unknown"


class TestRateLimiter:
    def test_sliding_window(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=3, window_seconds=60, clock=clock)

        assert all(limiter.is_allowed("a") for _ in range(3))
        assert not limiter.is_allowed("a")
        assert limiter.is_allowed("b")

        clock.advance(30)
        assert not limiter.is_allowed("a")
        clock.advance(30)
        assert limiter.is_allowed("a")
        assert limiter.remaining("a") == 2

    def test_requests_expire_individually(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=10, clock=clock)
        limiter.is_allowed("a")
        clock.advance(6)
        limiter.is_allowed("a")

        assert limiter.reset_after("a") == 4
        clock.advance(4)
        assert limiter.remaining("a") == 1
        assert limiter.is_allowed("a")

    def test_default_policy_is_sixty_per_minute(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        assert sum(limiter.is_allowed("a") for _ in range(61)) == 60

    def test_least_recently_used_clients_evicted(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60, max_clients=2, clock=FakeClock())
        limiter.is_allowed("a")
        limiter.is_allowed("b")
        limiter.remaining("a")
        limiter.is_allowed("c")

        assert len(limiter) == 2
        assert not limiter.is_allowed("a")
        # "b" was evicted, so it starts with a fresh window
        assert limiter.is_allowed("b")

    def test_expired_clients_dropped_before_live_ones(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, max_clients=2, clock=clock)
        limiter.is_allowed("a")
        clock.advance(30)
        limiter.is_allowed("b")
        clock.advance(31)
        # "a" is now the most recent client but its window has expired
        limiter.remaining("a")
        limiter.is_allowed("c")

        assert len(limiter) == 2
        assert not limiter.is_allowed("b")

    def test_cleanup_drops_idle_clients(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock)
        limiter.is_allowed("a")
        clock.advance(61)
        limiter.is_allowed("b")

        limiter.cleanup()
        assert len(limiter) == 1


class TestConcurrencyLimiter:
    def test_cap_and_release(self):
        limiter = ConcurrencyLimiter(max_in_flight=2)
        assert limiter.try_acquire("a")
        assert limiter.try_acquire("a")
        assert not limiter.try_acquire("a")
        assert limiter.try_acquire("b")

        limiter.release("a")
        assert limiter.active("a") == 1
        assert limiter.try_acquire("a")

    def test_never_negative_and_idle_entries_removed(self):
        limiter = ConcurrencyLimiter(max_in_flight=2)
        limiter.try_acquire("a")
        limiter.release("a")
        limiter.release("a")

        assert limiter.active("a") == 0
        assert len(limiter) == 0


class TestAdmissionGuard:
    @pytest.fixture
    def guard(self):
        return AdmissionGuard(
            RateLimiter(max_requests=5, window_seconds=60, clock=FakeClock()),
            ConcurrencyLimiter(max_in_flight=2),
        )

    def test_admit_and_release(self, guard):
        assert guard.admit("a")
        assert guard.admit("a")
        assert not guard.admit("a")

        guard.release("a")
        assert guard.admit("a")

    def test_concurrency_rejections_still_count_against_rate(self, guard):
        results = [guard.admit("a") for _ in range(5)]
        assert results == [True, True, False, False, False]
        guard.release("a")
        guard.release("a")
        assert not guard.admit("a")
        assert guard.rate_limiter.remaining("a") == 0

    def test_slot_releases_on_error(self, guard):
        async def _scenario():
            with pytest.raises(RuntimeError):
                async with guard.slot("a"):
                    assert guard.concurrency.active("a") == 1
                    raise RuntimeError("render blew up")
            return guard.concurrency.active("a")

        assert asyncio.run(_scenario()) == 0

    def test_slot_raises_admission_errors(self, guard):
        async def _scenario():
            async with guard.slot("a"):
                async with guard.slot("a"):
                    with pytest.raises(ConcurrencyLimitExceeded):
                        async with guard.slot("a"):
                            pass

        asyncio.run(_scenario())
        assert guard.concurrency.active("a") == 0

    def test_slot_rate_limit_has_retry_after(self):
        clock = FakeClock()
        guard = AdmissionGuard(
            RateLimiter(max_requests=1, window_seconds=60, clock=clock),
            ConcurrencyLimiter(max_in_flight=2),
        )

        async def _scenario():
            async with guard.slot("a"):
                pass
            clock.advance(15)
            async with guard.slot("a"):
                pass

        with pytest.raises(RateLimitExceeded) as excinfo:
            asyncio.run(_scenario())
        assert excinfo.value.retry_after == 45
        assert excinfo.value.status_code == 429

    def test_rate_limit_headers(self, guard):
        guard.admit("a")
        headers = guard.rate_limit_headers("a")
        assert headers["RateLimit-Limit"] == "5"
        assert headers["RateLimit-Remaining"] == "4"
        assert headers["RateLimit-Reset"] == "60"
