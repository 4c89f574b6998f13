from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RateLimitKeyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    key: str = Field(min_length=1, max_length=256)


class RateLimitResultResponse(BaseModel):
    allowed: bool
    remaining: int
    reset_time: float
    blocked: bool
    block_expires: Optional[float] = None


class ConsumeResponse(BaseModel):
    bucket: str
    allowed: bool
    result: RateLimitResultResponse


class RateLimitStatusResponse(BaseModel):
    bucket: str
    current_requests: int
    remaining: int
    reset_time: float
    blocked: bool
    block_expires: Optional[float] = None


class LimiterStatsResponse(BaseModel):
    total_keys: int
    blocked_keys: int
    active_keys: int


class RateLimitStatsResponse(BaseModel):
    buckets: dict[str, LimiterStatsResponse]
    ip: LimiterStatsResponse
    user: LimiterStatsResponse


class SecurityAnalysisRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str = Field(min_length=1, max_length=32)
    data: dict[str, Any] = Field(default_factory=dict)
    request_id: str = Field(min_length=1, max_length=128)


class SecurityAlertItem(BaseModel):
    id: str
    type: str
    severity: str
    message: str
    timestamp: float
    details: dict[str, Any]
    affected_users: list[str]
    affected_resources: list[str]


class SecurityAnalysisResponse(BaseModel):
    type: Literal["result", "error"]
    request_id: str
    data: Optional[list[SecurityAlertItem]] = None
    error: Optional[str] = None


class ThreatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    threat_type: str = Field(min_length=1, max_length=64)
    subject_id: str = Field(min_length=1, max_length=256)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ThreatResponse(BaseModel):
    detected: bool
    action: str
    count: int
    blocked_until: Optional[float] = None


class InspectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: str = Field(max_length=10_000)


class InspectResponse(BaseModel):
    sql_injection: bool
    xss: bool


class SecurityEventCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    event_type: str = Field(min_length=1, max_length=64)
    severity: Literal["low", "medium", "high", "critical"]
    description: str = Field(min_length=1, max_length=2000)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SecurityEventItem(BaseModel):
    id: str
    event_type: str
    severity: str
    description: str
    timestamp: datetime
    metadata: dict[str, Any]
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    hospital_id: Optional[str] = None
    resolved: bool


class MetricCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=128)
    value: float
    unit: str = Field(default="ms", max_length=16)
    context: dict[str, Any] = Field(default_factory=dict)


class WebVitalCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Literal["lcp", "fid", "cls", "ttfb", "fcp"]
    value: float = Field(ge=0)


class ThresholdUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    warning: float
    critical: float


class PerformanceAlertItem(BaseModel):
    metric: str
    value: float
    level: str
    threshold: float
    timestamp: float
    context: dict[str, Any]


class RecordMetricResponse(BaseModel):
    recorded: bool = True
    alert: Optional[PerformanceAlertItem] = None


class QCValidateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    test_type: str = Field(min_length=1, max_length=64)
    control_level: Literal["low", "normal", "high"] = "normal"
    measurements: list[float] = Field(min_length=1, max_length=1000)
    westgard_rules: list[str] = Field(default_factory=lambda: ["1_2s", "1_3s", "2_2s", "R_4s", "4_1s", "10x"])
    expected_mean: Optional[float] = None
    standard_deviation: Optional[float] = Field(default=None, gt=0)
    acceptable_range_min: Optional[float] = None
    acceptable_range_max: Optional[float] = None


class QCValidateResponse(BaseModel):
    passed: bool
    violated_rules: list[str]
    mean: float
    standard_deviation: float
    range_result: Optional[Literal["pass", "fail"]] = None
