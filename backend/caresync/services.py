from __future__ import annotations

from dataclasses import dataclass
import time

from .config import Settings, settings
from .performance import API_RESPONSE_TIME, MetricThreshold, PerformanceMonitor
from .rate_limit import (
    APIRateLimiter,
    BucketPolicy,
    Clock,
    PeriodicSweeper,
    RateLimiter,
    ip_rate_limiter,
    user_rate_limiter,
)
from .security_analysis import AnalysisRules, SecurityAnalysisWorker
from .security_monitor import SecurityMonitor


@dataclass
class GuardServices:
    """Everything the HTTP layer needs, built once per application."""

    api_limiter: APIRateLimiter
    ip_limiter: RateLimiter
    user_limiter: RateLimiter
    performance: PerformanceMonitor
    security: SecurityMonitor
    analysis_worker: SecurityAnalysisWorker
    sweeper: PeriodicSweeper
    clock: Clock
    settings: Settings

    def all_limiters(self) -> list[RateLimiter]:
        return [*self.api_limiter.limiters().values(), self.ip_limiter, self.user_limiter]


def _policy(values: tuple[int, int, int]) -> BucketPolicy:
    window, max_requests, block = values
    return BucketPolicy(window_seconds=window, max_requests=max_requests, block_seconds=block)


def build_services(cfg: Settings = settings, clock: Clock = time.time) -> GuardServices:
    api_limiter = APIRateLimiter(
        policies={name: _policy(values) for name, values in cfg.bucket_policies.items()},
        clock=clock,
    )
    performance = PerformanceMonitor(
        max_metrics=cfg.performance_max_metrics,
        thresholds={API_RESPONSE_TIME: MetricThreshold(cfg.api_warning_ms, max(cfg.api_warning_ms, cfg.api_critical_ms))},
        clock=clock,
    )
    security = SecurityMonitor(clock=clock, max_events=cfg.security_max_events)
    worker = SecurityAnalysisWorker(
        max_workers=cfg.security_worker_threads,
        rules=AnalysisRules(
            after_hours_start=cfg.after_hours_start,
            after_hours_end=cfg.after_hours_end,
            utc_offset_minutes=cfg.after_hours_utc_offset_minutes,
        ),
    )

    services = GuardServices(
        api_limiter=api_limiter,
        ip_limiter=ip_rate_limiter(clock=clock, policy=_policy(cfg.ip_rate_limit)),
        user_limiter=user_rate_limiter(clock=clock, policy=_policy(cfg.user_rate_limit)),
        performance=performance,
        security=security,
        analysis_worker=worker,
        sweeper=PeriodicSweeper(),
        clock=clock,
        settings=cfg,
    )

    for limiter in services.all_limiters():
        services.sweeper.add_limiter(limiter)
    retention = cfg.security_event_retention_seconds
    services.sweeper.add(
        "security_events",
        min(retention, 3600),
        lambda: security.clear_old_events(retention),
    )
    services.sweeper.add("security_violations", 60, security.tracker.cleanup)
    return services
