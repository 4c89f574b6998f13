import asyncio

from prometheus_client import REGISTRY
import pytest

from caresync.config import DEFAULT_BUCKET_POLICIES
from caresync.rate_limit import (
    DEFAULT_POLICIES,
    APIRateLimiter,
    BucketPolicy,
    PeriodicSweeper,
    RateLimitBucket,
    RateLimiter,
    ViolationTracker,
    ip_rate_limiter,
    user_rate_limiter,
)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def test_quota_then_block_then_recovery(clock):
    limiter = RateLimiter(window_seconds=60, max_requests=3, block_seconds=300, clock=clock)

    assert [limiter.acquire("u1").remaining for _ in range(3)] == [2, 1, 0]

    rejected = limiter.acquire("u1")
    assert rejected.allowed is False
    assert rejected.blocked is True
    assert rejected.block_expires == 300
    assert rejected.reset_time == 300

    clock.now = 250
    still_blocked = limiter.check("u1")
    assert still_blocked.allowed is False
    assert still_blocked.block_expires == 300

    clock.now = 300.001
    recovered = limiter.check("u1")
    assert recovered.allowed is True
    assert recovered.blocked is False
    assert recovered.remaining == 3


def test_block_is_sticky_even_after_window_drains(clock):
    limiter = RateLimiter(window_seconds=10, max_requests=1, block_seconds=100, clock=clock)
    limiter.acquire("k")
    assert limiter.consume("k") is False

    clock.now = 50
    assert limiter.consume("k") is False


def test_block_expires_exactly_at_expiry(clock):
    limiter = RateLimiter(window_seconds=10, max_requests=1, block_seconds=100, clock=clock)
    limiter.acquire("k")
    limiter.acquire("k")

    clock.now = 100
    assert limiter.check("k").allowed is True


def test_never_seen_key_has_full_quota(clock):
    limiter = RateLimiter(window_seconds=60, max_requests=5, block_seconds=60, clock=clock)
    result = limiter.check("fresh")

    assert result.allowed is True
    assert result.remaining == 5
    assert result.reset_time == 60
    assert result.block_expires is None


def test_check_does_not_consume_quota(clock):
    limiter = RateLimiter(window_seconds=60, max_requests=2, block_seconds=60, clock=clock)
    for _ in range(5):
        assert limiter.check("k").remaining == 2
    assert limiter.get_status("k").current_requests == 0


def test_window_slides(clock):
    limiter = RateLimiter(window_seconds=60, max_requests=2, block_seconds=60, clock=clock)
    limiter.acquire("k")
    clock.advance(30)
    limiter.acquire("k")

    clock.advance(31)
    status = limiter.get_status("k")
    assert status.current_requests == 1
    assert status.remaining == 1
    assert status.reset_time == pytest.approx(30 + 60)


def test_get_status_is_idempotent(clock):
    limiter = RateLimiter(window_seconds=60, max_requests=3, block_seconds=60, clock=clock)
    limiter.acquire("k")

    first = limiter.get_status("k")
    second = limiter.get_status("k")
    assert first == second
    assert first.current_requests == 1
    assert first.remaining == 2


def test_reset_clears_requests_and_block(clock):
    limiter = RateLimiter(window_seconds=60, max_requests=1, block_seconds=600, clock=clock)
    limiter.acquire("k")
    limiter.acquire("k")
    assert limiter.check("k").blocked is True

    limiter.reset("k")
    result = limiter.check("k")
    assert result.allowed is True
    assert result.remaining == 1


def test_explicit_block_keeps_longer_expiry(clock):
    limiter = RateLimiter(window_seconds=60, max_requests=10, block_seconds=300, clock=clock)

    assert limiter.block("k", seconds=1000) == 1000
    assert limiter.block("k", seconds=10) == 1000
    assert limiter.check("k").block_expires == 1000


def test_cleanup_and_stats(clock):
    limiter = RateLimiter(window_seconds=60, max_requests=1, block_seconds=30, clock=clock)
    limiter.acquire("a")
    limiter.acquire("b")
    limiter.acquire("b")

    stats = limiter.get_stats()
    assert stats.total_keys == 2
    assert stats.blocked_keys == 1
    assert stats.active_keys == 2

    clock.advance(61)
    assert limiter.cleanup() == 3
    assert limiter.get_stats().total_keys == 0


def test_invalid_configuration_rejected():
    with pytest.raises(ValueError):
        RateLimiter(window_seconds=0)
    with pytest.raises(ValueError):
        RateLimiter(max_requests=0)


def test_presets(clock):
    ip = ip_rate_limiter(clock=clock)
    user = user_rate_limiter(clock=clock)

    assert (ip.window_seconds, ip.max_requests, ip.block_seconds) == (60, 50, 600)
    assert (user.window_seconds, user.max_requests, user.block_seconds) == (60, 30, 300)
    assert ip.name == "ip"
    assert user.name == "user"


def test_api_limiter_default_policies(clock):
    api = APIRateLimiter(clock=clock)
    expected = {
        "default": (60, 100, 300),
        "auth": (60, 5, 900),
        "payment": (60, 10, 300),
        "admin": (60, 50, 300),
        "read": (60, 200, 60),
    }
    for name, (window, max_requests, block) in expected.items():
        limiter = api.limiter_for(name)
        assert (limiter.window_seconds, limiter.max_requests, limiter.block_seconds) == (window, max_requests, block)


def test_config_defaults_follow_limiter_policies():
    assert DEFAULT_BUCKET_POLICIES["auth"] == (60, 5, 900)
    for name, policy in DEFAULT_POLICIES.items():
        window, max_requests, block = DEFAULT_BUCKET_POLICIES[name]
        assert BucketPolicy(window, max_requests, block) == policy


def test_buckets_are_isolated(clock):
    api = APIRateLimiter(clock=clock)
    for _ in range(5):
        assert api.consume_limit("u1", RateLimitBucket.AUTH) is True
    assert api.consume_limit("u1", RateLimitBucket.AUTH) is False

    assert api.check_limit("u1", RateLimitBucket.READ).allowed is True
    assert api.consume_limit("u1", "read") is True


def test_unknown_bucket_falls_back_to_default(clock):
    api = APIRateLimiter(clock=clock)
    api.consume_limit("k", "no-such-bucket")

    assert api.limiter_for("no-such-bucket") is api.limiter_for(RateLimitBucket.DEFAULT)
    assert api.get_status("k").current_requests == 1


def test_api_limiter_reset_block_and_stats(clock):
    api = APIRateLimiter(policies={"payment": BucketPolicy(60, 1, 120)}, clock=clock)
    api.consume_limit("k", "payment")
    api.consume_limit("k", "payment")
    assert api.get_status("k", "payment").blocked is True

    api.reset_limit("k", "payment")
    assert api.get_status("k", "payment").blocked is False

    assert api.block_key("x", RateLimitBucket.AUTH) == 900
    stats = api.get_stats()
    assert stats["auth"].blocked_keys == 1
    assert stats["payment"].total_keys == 0


def test_violation_tracker_window(clock):
    tracker = ViolationTracker(clock=clock)
    assert tracker.record("login:u1", 300).count == 1
    clock.advance(100)
    assert tracker.record("login:u1", 300).count == 2
    clock.advance(250)
    assert tracker.record("login:u1", 300).count == 2

    tracker.clear("login:u1")
    assert tracker.record("login:u1", 300).count == 1


def test_violation_tracker_cleanup_forgets_idle_keys(clock):
    tracker = ViolationTracker(clock=clock)
    tracker.record("rapid_requests:a", 60)
    tracker.record("data_export:b", 3600)
    assert len(tracker) == 2

    clock.advance(61)
    assert tracker.cleanup() == 1
    assert len(tracker) == 1

    clock.advance(3600)
    assert tracker.cleanup() == 1
    assert len(tracker) == 0
    assert tracker.record("data_export:b", 3600).count == 1


def test_api_limiter_acquire_counts_rejections(clock):
    api = APIRateLimiter(policies={"payment": BucketPolicy(60, 1, 120)}, clock=clock)
    sample = ("rate_limit_rejections_total", {"bucket": "payment"})
    before = REGISTRY.get_sample_value(*sample) or 0.0

    assert api.acquire_limit("k", "payment").remaining == 0
    rejected = api.acquire_limit("k", "payment")
    assert rejected.allowed is False
    assert rejected.block_expires == 120
    assert REGISTRY.get_sample_value(*sample) == before + 1


def test_periodic_sweeper_runs_jobs_and_survives_failures():
    calls: list[str] = []

    def flaky() -> None:
        calls.append("flaky")
        raise RuntimeError("boom")

    async def scenario() -> None:
        sweeper = PeriodicSweeper()
        sweeper.add("ok", 0.01, lambda: calls.append("ok"))
        sweeper.add("flaky", 0.01, flaky)
        sweeper.start()
        assert sweeper.running is True
        await asyncio.sleep(0.1)
        await sweeper.stop()
        assert sweeper.running is False

    asyncio.run(scenario())

    assert calls.count("ok") >= 2
    assert calls.count("flaky") >= 2


def test_periodic_sweeper_rejects_bad_interval():
    with pytest.raises(ValueError):
        PeriodicSweeper().add("bad", 0, lambda: None)
