"""FastAPI glue for the rate limiters: 429 rendering, per-route guards, auth limits."""

from __future__ import annotations

import logging
import math
import time
from typing import Awaitable, Callable, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from .metrics import RATE_LIMIT_REJECTIONS_TOTAL, REQUEST_DURATION_SECONDS, REQUESTS_TOTAL
from .performance import APIMetric
from .rate_limit import RateLimitBucket, RateLimitResult
from .security import AuthContext, auth_context_from_header, optional_auth_context
from .services import GuardServices

logger = logging.getLogger("caresync.guard")


class RateLimitExceeded(Exception):
    def __init__(self, result: RateLimitResult, bucket: str, key: str, now: float) -> None:
        super().__init__(f"Rate limit exceeded for {bucket}")
        self.result = result
        self.bucket = bucket
        self.key = key
        self.now = now

    @property
    def retry_after(self) -> int:
        return max(0, math.ceil(self.result.reset_time - self.now))


def rate_limit_payload(exc: RateLimitExceeded) -> dict[str, object]:
    return {
        "error": "Too many requests",
        "retryAfter": exc.retry_after,
        "blocked": exc.result.blocked,
        "blockExpires": exc.result.block_expires,
    }


def rate_limit_response(exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=rate_limit_payload(exc),
        headers={"Retry-After": str(exc.retry_after)},
    )


async def rate_limit_exceeded_handler(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return rate_limit_response(exc)


def get_services(request: Request) -> GuardServices:
    return request.app.state.services


def client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _reject(services: GuardServices, result: RateLimitResult, bucket: str, key: str, path: str) -> RateLimitExceeded:
    RATE_LIMIT_REJECTIONS_TOTAL.labels(bucket=bucket).inc()
    logger.warning(
        "Request rejected by rate limiter",
        extra={"event": "rate_limited", "bucket": bucket, "key": key, "path": path},
    )
    return RateLimitExceeded(result, bucket, key, services.clock())


class RateLimitGuard:
    """Route dependency throttling by client IP and, when authenticated, user id.

    Every key is checked before any is consumed, so a rejected request never
    spends quota on the keys that would have passed.
    """

    def __init__(self, bucket: RateLimitBucket | str = RateLimitBucket.DEFAULT, use_ip: bool = True, use_user: bool = True) -> None:
        self.bucket = getattr(bucket, "value", bucket)
        self.use_ip = use_ip
        self.use_user = use_user

    def keys(self, request: Request, auth: Optional[AuthContext]) -> list[str]:
        keys: list[str] = []
        if self.use_ip:
            keys.append(client_ip(request))
        if self.use_user and auth is not None:
            keys.append(auth.user_id)
        return keys

    def __call__(self, request: Request, auth: Optional[AuthContext] = Depends(optional_auth_context)) -> None:
        services = get_services(request)
        limiter = services.api_limiter.limiter_for(self.bucket)
        keys = self.keys(request, auth)

        for key in keys:
            result = limiter.check(key)
            if not result.allowed:
                raise _reject(services, result, limiter.name, key, request.url.path)

        for key in keys:
            result = limiter.acquire(key)
            if not result.allowed:
                raise _reject(services, result, limiter.name, key, request.url.path)


def current_user(request: Request, auth: AuthContext = Depends(auth_context_from_header)) -> AuthContext:
    services = get_services(request)
    result = services.user_limiter.acquire(auth.user_id)
    if not result.allowed:
        raise _reject(services, result, services.user_limiter.name, auth.user_id, request.url.path)
    return auth


def require_roles(*roles: str) -> Callable[..., AuthContext]:
    allowed = frozenset(roles)

    def dependency(auth: AuthContext = Depends(current_user)) -> AuthContext:
        if auth.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return auth

    return dependency


async def request_guard_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    services = get_services(request)
    path = request.url.path
    method = request.method
    ip = client_ip(request)

    result = services.ip_limiter.acquire(ip)
    if not result.allowed:
        exc = _reject(services, result, services.ip_limiter.name, ip, path)
        REQUESTS_TOTAL.labels(method=method, path=path, status="429").inc()
        return rate_limit_response(exc)

    started = time.perf_counter()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        elapsed = time.perf_counter() - started
        REQUESTS_TOTAL.labels(method=method, path=path, status=str(status)).inc()
        REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(elapsed)
        services.performance.record_api_metric(
            APIMetric(
                endpoint=path,
                method=method,
                duration_ms=elapsed * 1000.0,
                status=status,
                timestamp=services.clock(),
            )
        )
