from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..guard import RateLimitGuard, require_roles
from ..quality_control import QCRule, QCValidationError, classify_qc_result, validate_westgard_rules
from ..rate_limit import RateLimitBucket
from ..schemas import QCValidateRequest, QCValidateResponse
from ..security import AuthContext

router = APIRouter(prefix="/lab/qc", tags=["quality-control"])
logger = logging.getLogger("caresync.qc")


@router.post(
    "/validate",
    response_model=QCValidateResponse,
    dependencies=[Depends(RateLimitGuard(RateLimitBucket.DEFAULT))],
)
def validate_qc_run(
    payload: QCValidateRequest,
    auth: AuthContext = Depends(require_roles("lab_technician", "doctor", "admin")),
) -> QCValidateResponse:
    rule = QCRule(
        test_type=payload.test_type,
        control_level=payload.control_level,
        westgard_rules=tuple(payload.westgard_rules),
        expected_mean=payload.expected_mean,
        standard_deviation=payload.standard_deviation,
    )
    try:
        result = validate_westgard_rules(payload.measurements, rule)
    except QCValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    range_result = None
    if payload.acceptable_range_min is not None and payload.acceptable_range_max is not None:
        range_result = classify_qc_result(
            payload.measurements[-1],
            payload.acceptable_range_min,
            payload.acceptable_range_max,
        )

    if not result.passed:
        logger.warning(
            "QC run violated Westgard rules",
            extra={
                "event": "qc_violation",
                "user_id": auth.user_id,
                "reason": ",".join(result.violated_rules),
            },
        )

    return QCValidateResponse(
        passed=result.passed,
        violated_rules=result.violated_rules,
        mean=result.mean,
        standard_deviation=result.standard_deviation,
        range_result=range_result,
    )
