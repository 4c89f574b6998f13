from __future__ import annotations

import os
from dataclasses import dataclass

from .rate_limit import DEFAULT_POLICIES, IP_POLICY, USER_POLICY, BucketPolicy


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _as_policy(value: str | None, default: tuple[int, int, int]) -> tuple[int, int, int]:
    """Parse ``"window,max,block"`` (seconds, requests, seconds)."""
    if value is None:
        return default
    parts = [part.strip() for part in value.split(",")]
    if len(parts) != 3:
        return default
    try:
        window, max_requests, block = (int(part) for part in parts)
    except ValueError:
        return default
    if window <= 0 or max_requests <= 0 or block < 0:
        return default
    return (window, max_requests, block)


def _normalize_database_url(value: str | None, fallback: str) -> str:
    raw = (value or fallback).strip() or fallback
    # Some dashboards accidentally store quoted values.
    if (raw.startswith('"') and raw.endswith('"')) or (raw.startswith("'") and raw.endswith("'")):
        raw = raw[1:-1].strip()

    if "://" not in raw:
        return raw

    scheme, suffix = raw.split("://", 1)
    if scheme.lower() in {"postgres", "postgresql", "postgresql+psycopg2"}:
        return f"postgresql+psycopg2://{suffix}"
    return raw


def _as_triple(policy: BucketPolicy) -> tuple[int, int, int]:
    return (int(policy.window_seconds), policy.max_requests, int(policy.block_seconds))


DEFAULT_BUCKET_POLICIES: dict[str, tuple[int, int, int]] = {
    name: _as_triple(policy) for name, policy in DEFAULT_POLICIES.items()
}


@dataclass(frozen=True)
class Settings:
    env: str
    jwt_secret: str
    jwt_algorithm: str
    port: int
    database_url: str
    db_pool_size: int
    db_max_overflow: int
    db_pool_timeout: int
    db_pool_recycle: int
    cors_origins: list[str]
    debug: bool
    bucket_policies: dict[str, tuple[int, int, int]]
    ip_rate_limit: tuple[int, int, int]
    user_rate_limit: tuple[int, int, int]
    enable_prometheus_metrics: bool
    performance_max_metrics: int
    api_warning_ms: float
    api_critical_ms: float
    security_event_retention_seconds: int
    security_max_events: int
    security_worker_threads: int
    after_hours_start: int
    after_hours_end: int
    after_hours_utc_offset_minutes: int
    log_level: str

    @property
    def is_production(self) -> bool:
        return self.env.lower() not in {"development", "dev", "test", "testing"}

    def validate(self) -> None:
        """Raise early on dangerous mis-configurations in non-dev environments."""
        if self.is_production and self.jwt_secret == _DEFAULT_JWT_SECRET:
            raise RuntimeError(
                "JWT_SECRET must be set to the auth backend's signing secret in production."
            )


_DEFAULT_JWT_SECRET = "change-me-in-production-min-32-bytes-key"


settings = Settings(
    env=os.getenv("ENV", "development"),
    jwt_secret=os.getenv("JWT_SECRET", _DEFAULT_JWT_SECRET),
    jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
    port=_as_int(os.getenv("PORT"), 8000),
    database_url=_normalize_database_url(
        os.getenv("DATABASE_URL"),
        "sqlite:///./caresync.db",
    ),
    db_pool_size=max(1, _as_int(os.getenv("DB_POOL_SIZE"), 5)),
    db_max_overflow=max(0, _as_int(os.getenv("DB_MAX_OVERFLOW"), 10)),
    db_pool_timeout=max(1, _as_int(os.getenv("DB_POOL_TIMEOUT"), 30)),
    db_pool_recycle=max(60, _as_int(os.getenv("DB_POOL_RECYCLE"), 1800)),
    cors_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
        if origin.strip()
    ],
    debug=_as_bool(os.getenv("DEBUG"), False),
    bucket_policies={
        name: _as_policy(os.getenv(f"RATE_LIMIT_{name.upper()}"), default)
        for name, default in DEFAULT_BUCKET_POLICIES.items()
    },
    ip_rate_limit=_as_policy(os.getenv("RATE_LIMIT_IP"), _as_triple(IP_POLICY)),
    user_rate_limit=_as_policy(os.getenv("RATE_LIMIT_USER"), _as_triple(USER_POLICY)),
    enable_prometheus_metrics=_as_bool(os.getenv("ENABLE_PROMETHEUS_METRICS"), True),
    performance_max_metrics=max(10, _as_int(os.getenv("PERFORMANCE_MAX_METRICS"), 1000)),
    api_warning_ms=max(1.0, _as_float(os.getenv("PERF_API_WARNING_MS"), 1000.0)),
    api_critical_ms=max(1.0, _as_float(os.getenv("PERF_API_CRITICAL_MS"), 3000.0)),
    security_event_retention_seconds=max(60, _as_int(os.getenv("SECURITY_EVENT_RETENTION_SECONDS"), 86400)),
    security_max_events=max(10, _as_int(os.getenv("SECURITY_MAX_EVENTS"), 1000)),
    security_worker_threads=max(1, _as_int(os.getenv("SECURITY_WORKER_THREADS"), 1)),
    after_hours_start=min(23, max(0, _as_int(os.getenv("AFTER_HOURS_START"), 22))),
    after_hours_end=min(23, max(0, _as_int(os.getenv("AFTER_HOURS_END"), 6))),
    after_hours_utc_offset_minutes=min(14 * 60, max(-12 * 60, _as_int(os.getenv("AFTER_HOURS_UTC_OFFSET_MINUTES"), 0))),
    log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
)

settings.validate()
