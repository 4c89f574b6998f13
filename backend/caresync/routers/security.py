from __future__ import annotations

from dataclasses import asdict
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..guard import RateLimitGuard, current_user, get_services, require_roles
from ..rate_limit import RateLimitBucket
from ..schemas import (
    InspectRequest,
    InspectResponse,
    SecurityAlertItem,
    SecurityAnalysisRequest,
    SecurityAnalysisResponse,
    SecurityEventCreate,
    SecurityEventItem,
    ThreatRequest,
    ThreatResponse,
)
from ..security import AuthContext
from ..security_analysis import AnalysisRequest
from ..security_monitor import SecurityEventRecord
from ..services import GuardServices

router = APIRouter(prefix="/security", tags=["security"])
logger = logging.getLogger("caresync.security.api")

admin_guard = RateLimitGuard(RateLimitBucket.ADMIN)


def _event_item(event: SecurityEventRecord) -> SecurityEventItem:
    return SecurityEventItem(**asdict(event))


@router.post(
    "/analysis",
    response_model=SecurityAnalysisResponse,
    dependencies=[Depends(admin_guard)],
)
async def run_security_analysis(
    payload: SecurityAnalysisRequest,
    _admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> SecurityAnalysisResponse:
    response = await services.analysis_worker.run(
        AnalysisRequest(type=payload.type, data=payload.data, request_id=payload.request_id)
    )
    return SecurityAnalysisResponse(
        type=response.type,
        request_id=response.request_id,
        data=[SecurityAlertItem(**asdict(alert)) for alert in response.data] if response.data is not None else None,
        error=response.error,
    )


@router.post(
    "/threats",
    response_model=ThreatResponse,
    dependencies=[Depends(admin_guard)],
)
def report_threat(
    payload: ThreatRequest,
    admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> ThreatResponse:
    detection = services.security.detect_threat(
        payload.threat_type,
        payload.subject_id,
        payload.metadata,
        hospital_id=admin.hospital_id,
    )
    blocked_until: Optional[float] = None
    if detection.action == "block":
        blocked_until = services.api_limiter.block_key(payload.subject_id, RateLimitBucket.AUTH)
        logger.warning(
            "Subject blocked after threat detection",
            extra={
                "event": "threat_block",
                "threat_type": payload.threat_type,
                "key": payload.subject_id,
                "bucket": RateLimitBucket.AUTH.value,
            },
        )
    return ThreatResponse(
        detected=detection.detected,
        action=detection.action,
        count=detection.count,
        blocked_until=blocked_until,
    )


@router.post(
    "/inspect",
    response_model=InspectResponse,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.DEFAULT))],
)
def inspect_input(
    payload: InspectRequest,
    auth: AuthContext = Depends(current_user),
    services: GuardServices = Depends(get_services),
) -> InspectResponse:
    return InspectResponse(
        sql_injection=services.security.check_for_sql_injection(payload.value, hospital_id=auth.hospital_id),
        xss=services.security.check_for_xss(payload.value, hospital_id=auth.hospital_id),
    )


@router.post(
    "/events",
    response_model=SecurityEventItem,
    status_code=201,
    dependencies=[Depends(admin_guard)],
)
def create_security_event(
    payload: SecurityEventCreate,
    admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> SecurityEventItem:
    event = services.security.log_security_event(
        payload.event_type,
        payload.severity,
        payload.description,
        payload.metadata,
        user_id=admin.user_id,
        hospital_id=admin.hospital_id,
    )
    return _event_item(event)


@router.get(
    "/events",
    response_model=list[SecurityEventItem],
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.READ))],
)
def list_security_events(
    severity: Optional[Literal["low", "medium", "high", "critical"]] = None,
    limit: int = Query(default=100, ge=1, le=500),
    admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> list[SecurityEventItem]:
    events = services.security.get_security_events(admin.hospital_id, severity=severity, limit=limit)
    return [_event_item(event) for event in events]


@router.get(
    "/events/recent",
    response_model=list[SecurityEventItem],
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.READ))],
)
def recent_security_events(
    limit: int = Query(default=10, ge=1, le=100),
    _admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> list[SecurityEventItem]:
    return [_event_item(event) for event in services.security.get_recent_events(limit)]


@router.post(
    "/events/{event_id}/resolve",
    dependencies=[Depends(admin_guard)],
)
def resolve_security_event(
    event_id: str,
    admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> dict[str, object]:
    if not services.security.resolve_security_event(event_id):
        raise HTTPException(status_code=404, detail="Security event not found")
    logger.info(
        "Security event resolved",
        extra={"event": "security_event_resolved", "user_id": admin.user_id, "reason": event_id},
    )
    return {"id": event_id, "resolved": True}


@router.get(
    "/report",
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.READ))],
)
def security_report(
    days: int = Query(default=30, ge=1, le=365),
    admin: AuthContext = Depends(require_roles("admin")),
    services: GuardServices = Depends(get_services),
) -> dict[str, object]:
    return services.security.generate_security_report(admin.hospital_id, days=days)
