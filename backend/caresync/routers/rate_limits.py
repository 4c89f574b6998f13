from __future__ import annotations

from dataclasses import asdict
import logging

from fastapi import APIRouter, Depends, Query, Response

from ..guard import RateLimitGuard, current_user, get_services, require_roles
from ..rate_limit import RateLimitBucket
from ..schemas import (
    ConsumeResponse,
    LimiterStatsResponse,
    RateLimitKeyRequest,
    RateLimitResultResponse,
    RateLimitStatsResponse,
    RateLimitStatusResponse,
)
from ..security import AuthContext
from ..services import GuardServices

router = APIRouter(prefix="/rate-limits", tags=["rate-limits"])
logger = logging.getLogger("caresync.ratelimit.api")


@router.get(
    "/stats",
    response_model=RateLimitStatsResponse,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.ADMIN))],
)
def rate_limit_stats(
    _admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> RateLimitStatsResponse:
    return RateLimitStatsResponse(
        buckets={
            name: LimiterStatsResponse(**asdict(stats))
            for name, stats in services.api_limiter.get_stats().items()
        },
        ip=LimiterStatsResponse(**asdict(services.ip_limiter.get_stats())),
        user=LimiterStatsResponse(**asdict(services.user_limiter.get_stats())),
    )


@router.post(
    "/{bucket}/check",
    response_model=RateLimitResultResponse,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.READ))],
)
def check_limit(
    bucket: str,
    payload: RateLimitKeyRequest,
    _auth: AuthContext = Depends(current_user),
    services: GuardServices = Depends(get_services),
) -> RateLimitResultResponse:
    result = services.api_limiter.check_limit(payload.key, bucket)
    return RateLimitResultResponse(**asdict(result))


@router.post(
    "/{bucket}/consume",
    response_model=ConsumeResponse,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.DEFAULT))],
)
def consume_limit(
    bucket: str,
    payload: RateLimitKeyRequest,
    _auth: AuthContext = Depends(current_user),
    services: GuardServices = Depends(get_services),
) -> ConsumeResponse:
    limiter = services.api_limiter.limiter_for(bucket)
    result = services.api_limiter.acquire_limit(payload.key, bucket)
    return ConsumeResponse(
        bucket=limiter.name,
        allowed=result.allowed,
        result=RateLimitResultResponse(**asdict(result)),
    )


@router.get(
    "/{bucket}/status",
    response_model=RateLimitStatusResponse,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.READ))],
)
def limit_status(
    bucket: str,
    key: str = Query(..., min_length=1, max_length=256),
    _auth: AuthContext = Depends(current_user),
    services: GuardServices = Depends(get_services),
) -> RateLimitStatusResponse:
    limiter = services.api_limiter.limiter_for(bucket)
    return RateLimitStatusResponse(bucket=limiter.name, **asdict(limiter.get_status(key)))


@router.delete(
    "/{bucket}/keys/{key}",
    status_code=204,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.ADMIN))],
)
def reset_limit(
    bucket: str,
    key: str,
    admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> Response:
    limiter = services.api_limiter.limiter_for(bucket)
    limiter.reset(key)
    logger.info(
        "Rate limit reset by administrator",
        extra={"event": "rate_limit_reset", "bucket": limiter.name, "key": key, "user_id": admin.user_id},
    )
    return Response(status_code=204)
