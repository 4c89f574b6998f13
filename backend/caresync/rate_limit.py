"""In-memory rate limiting with temporary blocking.

Each :class:`RateLimiter` owns two maps: the accepted request records per key
and the block expiry per key. A key is always in exactly one of three states:
under quota, at quota (the next evaluation blocks it), or blocked until its
expiry. Blocks are sticky for their full duration even if the window would
have drained sooner.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
import logging
import threading
import time
from typing import Callable, Mapping, Optional

from .metrics import RATE_LIMIT_BLOCKED_KEYS, RATE_LIMIT_REJECTIONS_TOTAL

logger = logging.getLogger("caresync.ratelimit")

Clock = Callable[[], float]


class RateLimitBucket(str, Enum):
    DEFAULT = "default"
    AUTH = "auth"
    PAYMENT = "payment"
    ADMIN = "admin"
    READ = "read"


@dataclass(frozen=True)
class BucketPolicy:
    window_seconds: float
    max_requests: int
    block_seconds: float


DEFAULT_POLICIES: dict[str, BucketPolicy] = {
    RateLimitBucket.DEFAULT.value: BucketPolicy(60, 100, 300),
    RateLimitBucket.AUTH.value: BucketPolicy(60, 5, 900),
    RateLimitBucket.PAYMENT.value: BucketPolicy(60, 10, 300),
    RateLimitBucket.ADMIN.value: BucketPolicy(60, 50, 300),
    RateLimitBucket.READ.value: BucketPolicy(60, 200, 60),
}

IP_POLICY = BucketPolicy(60, 50, 600)
USER_POLICY = BucketPolicy(60, 30, 300)


@dataclass
class RequestRecord:
    timestamp: float
    count: int = 1


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float
    blocked: bool
    block_expires: Optional[float] = None


@dataclass(frozen=True)
class RateLimitStatus:
    current_requests: int
    remaining: int
    reset_time: float
    blocked: bool
    block_expires: Optional[float] = None


@dataclass(frozen=True)
class LimiterStats:
    total_keys: int
    blocked_keys: int
    active_keys: int


class RateLimiter:
    """Sliding-window counter per key with a penalty block once the quota is hit."""

    def __init__(
        self,
        window_seconds: float = 60,
        max_requests: int = 100,
        block_seconds: float = 300,
        *,
        clock: Clock = time.time,
        name: str = "default",
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if block_seconds < 0:
            raise ValueError("block_seconds must not be negative")
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.block_seconds = block_seconds
        self.name = name
        self._clock = clock
        self._requests: dict[str, list[RequestRecord]] = {}
        self._blocked: dict[str, float] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_policy(cls, policy: BucketPolicy, *, clock: Clock = time.time, name: str = "default") -> "RateLimiter":
        return cls(
            window_seconds=policy.window_seconds,
            max_requests=policy.max_requests,
            block_seconds=policy.block_seconds,
            clock=clock,
            name=name,
        )

    def _live_records(self, key: str, now: float) -> list[RequestRecord]:
        window_start = now - self.window_seconds
        return [record for record in self._requests.get(key, ()) if record.timestamp > window_start]

    def _store(self, key: str, records: list[RequestRecord]) -> None:
        if records:
            self._requests[key] = records
        else:
            self._requests.pop(key, None)

    def _evaluate(self, key: str, increment: bool) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            block_expires = self._blocked.get(key)
            if block_expires is not None:
                if block_expires > now:
                    return RateLimitResult(
                        allowed=False,
                        remaining=0,
                        reset_time=block_expires,
                        blocked=True,
                        block_expires=block_expires,
                    )
                del self._blocked[key]

            records = self._live_records(key, now)
            current_count = sum(record.count for record in records)

            if current_count >= self.max_requests:
                block_expires = now + self.block_seconds
                self._blocked[key] = block_expires
                self._store(key, records)
                blocked_total = len(self._blocked)
            else:
                remaining = max(0, self.max_requests - current_count - (1 if increment else 0))
                if increment:
                    records.append(RequestRecord(timestamp=now))
                self._store(key, records)
                oldest = records[0].timestamp if records else now
                return RateLimitResult(
                    allowed=True,
                    remaining=remaining,
                    reset_time=oldest + self.window_seconds,
                    blocked=False,
                )

        RATE_LIMIT_BLOCKED_KEYS.labels(bucket=self.name).set(blocked_total)
        logger.warning(
            "Rate limit exceeded, key blocked",
            extra={"event": "rate_limit_block", "bucket": self.name, "key": key},
        )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=block_expires,
            blocked=True,
            block_expires=block_expires,
        )

    def check(self, key: str) -> RateLimitResult:
        """Evaluate the key without recording a request."""
        return self._evaluate(key, increment=False)

    def acquire(self, key: str) -> RateLimitResult:
        """Evaluate the key and record a request when it is allowed."""
        return self._evaluate(key, increment=True)

    def consume(self, key: str) -> bool:
        return self.acquire(key).allowed

    def reset(self, key: str) -> None:
        with self._lock:
            self._requests.pop(key, None)
            self._blocked.pop(key, None)

    def block(self, key: str, seconds: Optional[float] = None) -> float:
        """Block ``key`` explicitly; an existing longer block is kept."""
        duration = self.block_seconds if seconds is None else seconds
        expires = self._clock() + duration
        with self._lock:
            expires = max(expires, self._blocked.get(key, expires))
            self._blocked[key] = expires
            blocked_total = len(self._blocked)
        RATE_LIMIT_BLOCKED_KEYS.labels(bucket=self.name).set(blocked_total)
        return expires

    def get_status(self, key: str) -> RateLimitStatus:
        result = self.check(key)
        with self._lock:
            records = self._live_records(key, self._clock())
        return RateLimitStatus(
            current_requests=sum(record.count for record in records),
            remaining=result.remaining,
            reset_time=result.reset_time,
            blocked=result.blocked,
            block_expires=result.block_expires,
        )

    def cleanup(self) -> int:
        """Drop aged-out records and expired blocks. Returns the number of keys removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._requests):
                records = self._live_records(key, now)
                if not records:
                    removed += 1
                self._store(key, records)

            for key, expires in list(self._blocked.items()):
                if expires <= now:
                    del self._blocked[key]
                    removed += 1
            blocked_total = len(self._blocked)
        RATE_LIMIT_BLOCKED_KEYS.labels(bucket=self.name).set(blocked_total)
        return removed

    def get_stats(self) -> LimiterStats:
        with self._lock:
            return LimiterStats(
                total_keys=len(self._requests.keys() | self._blocked.keys()),
                blocked_keys=len(self._blocked),
                active_keys=len(self._requests),
            )


def ip_rate_limiter(clock: Clock = time.time, policy: BucketPolicy = IP_POLICY) -> RateLimiter:
    return RateLimiter.from_policy(policy, clock=clock, name="ip")


def user_rate_limiter(clock: Clock = time.time, policy: BucketPolicy = USER_POLICY) -> RateLimiter:
    return RateLimiter.from_policy(policy, clock=clock, name="user")


class APIRateLimiter:
    """Named buckets with their own policies. Buckets never share state."""

    def __init__(
        self,
        policies: Optional[Mapping[str, BucketPolicy]] = None,
        clock: Clock = time.time,
    ) -> None:
        merged = {**DEFAULT_POLICIES, **(policies or {})}
        self._limiters: dict[str, RateLimiter] = {
            bucket.value: RateLimiter.from_policy(merged[bucket.value], clock=clock, name=bucket.value)
            for bucket in RateLimitBucket
        }

    def limiter_for(self, bucket: RateLimitBucket | str = RateLimitBucket.DEFAULT) -> RateLimiter:
        name = getattr(bucket, "value", bucket)
        return self._limiters.get(name, self._limiters[RateLimitBucket.DEFAULT.value])

    def limiters(self) -> dict[str, RateLimiter]:
        return dict(self._limiters)

    def check_limit(self, key: str, bucket: RateLimitBucket | str = RateLimitBucket.DEFAULT) -> RateLimitResult:
        return self.limiter_for(bucket).check(key)

    def acquire_limit(self, key: str, bucket: RateLimitBucket | str = RateLimitBucket.DEFAULT) -> RateLimitResult:
        limiter = self.limiter_for(bucket)
        result = limiter.acquire(key)
        if not result.allowed:
            RATE_LIMIT_REJECTIONS_TOTAL.labels(bucket=limiter.name).inc()
        return result

    def consume_limit(self, key: str, bucket: RateLimitBucket | str = RateLimitBucket.DEFAULT) -> bool:
        return self.acquire_limit(key, bucket).allowed

    def get_status(self, key: str, bucket: RateLimitBucket | str = RateLimitBucket.DEFAULT) -> RateLimitStatus:
        return self.limiter_for(bucket).get_status(key)

    def reset_limit(self, key: str, bucket: RateLimitBucket | str = RateLimitBucket.DEFAULT) -> None:
        self.limiter_for(bucket).reset(key)

    def block_key(
        self,
        key: str,
        bucket: RateLimitBucket | str = RateLimitBucket.DEFAULT,
        seconds: Optional[float] = None,
    ) -> float:
        return self.limiter_for(bucket).block(key, seconds)

    def get_stats(self) -> dict[str, LimiterStats]:
        return {name: limiter.get_stats() for name, limiter in self._limiters.items()}


@dataclass
class ViolationRecord:
    key: str
    count: int


class ViolationTracker:
    """Counts suspicious actions in a rolling window."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._periods: dict[str, float] = {}
        self._lock = threading.Lock()

    def record(self, key: str, period_seconds: float) -> ViolationRecord:
        now = self._clock()
        window_start = now - period_seconds
        with self._lock:
            events = self._events[key]
            while events and events[0] <= window_start:
                events.popleft()

            events.append(now)
            self._periods[key] = period_seconds
            return ViolationRecord(key=key, count=len(events))

    def clear(self, key: str) -> None:
        with self._lock:
            self._events.pop(key, None)
            self._periods.pop(key, None)

    def cleanup(self) -> int:
        """Forget keys whose events have all left their window."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key, events in list(self._events.items()):
                if not events or events[-1] <= now - self._periods.get(key, 0):
                    del self._events[key]
                    self._periods.pop(key, None)
                    removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


SweepJob = Callable[[], object]


class PeriodicSweeper:
    """Runs housekeeping callables on fixed intervals inside the event loop."""

    def __init__(self) -> None:
        self._jobs: list[tuple[str, float, SweepJob]] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def add(self, name: str, interval_seconds: float, job: SweepJob) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._jobs.append((name, interval_seconds, job))

    def add_limiter(self, limiter: RateLimiter) -> None:
        self.add(f"rate_limit:{limiter.name}", limiter.window_seconds, limiter.cleanup)

    async def _run(self, name: str, interval_seconds: float, job: SweepJob) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                job()
            except Exception:
                logger.exception("Periodic sweep failed", extra={"event": "sweep_failed", "reason": name})

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self._run(name, interval, job)) for name, interval, job in self._jobs]
        logger.info("Periodic sweeps started", extra={"event": "sweeper_started"})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
