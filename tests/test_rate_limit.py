"""Tests for the sliding-window RateLimiter."""

from agent_gateway.rate_limit import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCheckAndRecord:
    def test_admits_up_to_max_then_rejects(self):
        limiter = RateLimiter(max_requests=10, window_seconds=60, clock=FakeClock())

        results = [limiter.check_and_record("device-1") for _ in range(10)]

        assert all(results)
        assert limiter.check_and_record("device-1") is False

    def test_admission_resumes_after_window_elapses(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
        limiter.check_and_record("device-1")
        limiter.check_and_record("device-1")
        assert limiter.check_and_record("device-1") is False

        clock.now += 60

        assert limiter.check_and_record("device-1") is True

    def test_rejected_attempts_are_not_recorded(self):
        """Hammering while limited must not extend the lockout."""
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=10, clock=clock)
        limiter.check_and_record("device-1")

        for _ in range(5):
            clock.now += 1
            assert limiter.check_and_record("device-1") is False

        clock.now = 1010.0
        assert limiter.check_and_record("device-1") is True

    def test_actors_are_independent(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())

        assert limiter.check_and_record("a") is True
        assert limiter.check_and_record("a") is False
        assert limiter.check_and_record("b") is True


class TestIntrospection:
    def test_remaining_counts_down(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60, clock=FakeClock())
        assert limiter.remaining("d") == 3

        limiter.check_and_record("d")

        assert limiter.remaining("d") == 2

    def test_time_until_reset(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        assert limiter.time_until_reset("d") == 0.0

        limiter.check_and_record("d")
        clock.now += 15

        assert limiter.time_until_reset("d") == 45.0

    def test_reset_clears_one_actor(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        limiter.check_and_record("a")
        limiter.check_and_record("b")

        limiter.reset("a")

        assert limiter.check_and_record("a") is True
        assert limiter.check_and_record("b") is False

    def test_reset_all(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        limiter.check_and_record("a")
        limiter.check_and_record("b")

        limiter.reset_all()

        assert limiter.remaining("a") == 1
        assert limiter.remaining("b") == 1
