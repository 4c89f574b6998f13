from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from ..guard import RateLimitGuard, current_user, get_services, require_roles
from ..performance import PerformanceAlert, PerformanceMetric
from ..rate_limit import RateLimitBucket
from ..schemas import (
    MetricCreate,
    PerformanceAlertItem,
    RecordMetricResponse,
    ThresholdUpdate,
    WebVitalCreate,
)
from ..security import AuthContext
from ..services import GuardServices

router = APIRouter(prefix="/performance", tags=["performance"])


def _recorded(alert: Optional[PerformanceAlert]) -> RecordMetricResponse:
    return RecordMetricResponse(alert=PerformanceAlertItem(**asdict(alert)) if alert else None)


@router.post(
    "/metrics",
    response_model=RecordMetricResponse,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.DEFAULT))],
)
def record_metric(
    payload: MetricCreate,
    _auth: AuthContext = Depends(current_user),
    services: GuardServices = Depends(get_services),
) -> RecordMetricResponse:
    metric = PerformanceMetric(
        name=payload.name,
        value=payload.value,
        unit=payload.unit,
        timestamp=services.clock(),
        context=payload.context,
    )
    return _recorded(services.performance.record_metric(metric))


@router.post(
    "/web-vitals",
    response_model=RecordMetricResponse,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.DEFAULT))],
)
def record_web_vital(
    payload: WebVitalCreate,
    _auth: AuthContext = Depends(current_user),
    services: GuardServices = Depends(get_services),
) -> RecordMetricResponse:
    return _recorded(services.performance.record_web_vital(payload.name, payload.value))


@router.get(
    "/summary",
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.READ))],
)
def performance_summary(
    _auth: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> dict[str, Any]:
    return services.performance.get_summary()


@router.get(
    "/alerts",
    response_model=list[PerformanceAlertItem],
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.READ))],
)
def performance_alerts(
    limit: int = Query(default=50, ge=1, le=500),
    _auth: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> list[PerformanceAlertItem]:
    return [PerformanceAlertItem(**asdict(alert)) for alert in services.performance.recent_alerts(limit)]


@router.put(
    "/thresholds/{metric}",
    status_code=204,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.ADMIN))],
)
def update_threshold(
    metric: str,
    payload: ThresholdUpdate,
    _auth: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> Response:
    try:
        services.performance.set_threshold(metric, payload.warning, payload.critical)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(status_code=204)


@router.delete(
    "/metrics",
    status_code=204,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.ADMIN))],
)
def clear_metrics(
    _auth: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> Response:
    services.performance.clear()
    return Response(status_code=204)
