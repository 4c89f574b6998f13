"""Pattern and threshold analysis over audit-log batches.

The analysis functions are pure and synchronous. :class:`SecurityAnalysisWorker`
runs them on a dedicated thread pool so request handlers never block the event
loop. Callers exchange one-shot request/response messages keyed by a
``request_id`` they choose.
"""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import re
import time
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence
import uuid

from .metrics import SECURITY_ALERTS_TOTAL

logger = logging.getLogger("caresync.security.analysis")

Severity = Literal["low", "medium", "high", "critical"]
LogRecord = Mapping[str, Any]


@dataclass(frozen=True)
class AnalysisRules:
    """Detection thresholds.

    After-hours checks read the wall-clock hour at ``utc_offset_minutes`` from
    UTC. The default of 0 evaluates them in UTC.
    """

    brute_force_threshold: int = 5
    brute_force_window_seconds: float = 5 * 60
    after_hours_start: int = 22
    after_hours_end: int = 6
    utc_offset_minutes: int = 0
    rapid_request_threshold: int = 100
    rapid_request_window_seconds: float = 60
    privilege_escalation_patterns: tuple[str, ...] = (
        r"attempted.*admin",
        r"unauthorized.*access",
        r"permission.*denied.*retry",
    )
    unusual_action_threshold: int = 3
    recent_action_count: int = 10
    common_action_count: int = 5


@dataclass(frozen=True)
class SecurityAlert:
    id: str
    type: str
    severity: Severity
    message: str
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)
    affected_users: list[str] = field(default_factory=list)
    affected_resources: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UserStats:
    avg_requests_per_day: float
    common_actions: list[str]
    typical_hours: list[int]


def _alert(alert_type: str, severity: Severity, message: str, details: dict[str, Any], users: Iterable[Any]) -> SecurityAlert:
    SECURITY_ALERTS_TOTAL.labels(type=alert_type).inc()
    return SecurityAlert(
        id=f"alert-{uuid.uuid4().hex[:12]}",
        type=alert_type,
        severity=severity,
        message=message,
        timestamp=time.time(),
        details=details,
        affected_users=[str(user) for user in users if user is not None],
    )


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"Timestamp out of range: {value!r}") from exc
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _serialize(log: LogRecord) -> str:
    return json.dumps(log, default=str, sort_keys=True)


def _group_by_user(logs: Iterable[LogRecord], default: str = "anonymous") -> dict[str, list[LogRecord]]:
    grouped: dict[str, list[LogRecord]] = defaultdict(list)
    for log in logs:
        grouped[str(log.get("user_id") or default)].append(log)
    return grouped


def _busiest_window(timestamps: Sequence[datetime], window_seconds: float) -> tuple[int, Optional[datetime]]:
    """Largest number of events inside any window starting at an event."""
    ordered = sorted(timestamps)
    best, best_start = 0, None
    end = 0
    for start, started_at in enumerate(ordered):
        if end < start:
            end = start
        while end < len(ordered) and (ordered[end] - started_at).total_seconds() <= window_seconds:
            end += 1
        if end - start > best:
            best, best_start = end - start, started_at
    return best, best_start


def _is_after_hours(moment: datetime, rules: AnalysisRules) -> bool:
    hour = moment.astimezone(timezone(timedelta(minutes=rules.utc_offset_minutes))).hour
    if rules.after_hours_start > rules.after_hours_end:
        return hour >= rules.after_hours_start or hour < rules.after_hours_end
    return rules.after_hours_start <= hour < rules.after_hours_end


def _in_range(log: LogRecord, start: Optional[datetime], end: Optional[datetime]) -> bool:
    moment = parse_timestamp(log["timestamp"])
    if start is not None and moment < start:
        return False
    if end is not None and moment > end:
        return False
    return True


def analyze_logs(
    logs: Sequence[LogRecord],
    time_range: Optional[tuple[Optional[datetime], Optional[datetime]]] = None,
    rules: Optional[AnalysisRules] = None,
) -> list[SecurityAlert]:
    rules = rules or AnalysisRules()
    if time_range is not None:
        start, end = time_range
        start = parse_timestamp(start) if start is not None else None
        end = parse_timestamp(end) if end is not None else None
        logs = [log for log in logs if _in_range(log, start, end)]

    alerts: list[SecurityAlert] = []
    by_user = _group_by_user(logs)

    for user_id, entries in by_user.items():
        failed = [
            parse_timestamp(entry["timestamp"])
            for entry in entries
            if "failed_login" in str(entry.get("action_type") or "")
        ]
        attempts, _ = _busiest_window(failed, rules.brute_force_window_seconds)
        if attempts >= rules.brute_force_threshold:
            alerts.append(
                _alert(
                    "brute_force_attempt",
                    "high",
                    f"Potential brute force attack detected for user {user_id}",
                    {
                        "failed_attempts": attempts,
                        "time_window_seconds": rules.brute_force_window_seconds,
                        "last_attempt": max(failed).isoformat(),
                    },
                    [user_id],
                )
            )

    # A single after-hours access stands out; a regular night-shift pattern does not.
    for user_id, entries in by_user.items():
        after_hours = [entry for entry in entries if _is_after_hours(parse_timestamp(entry["timestamp"]), rules)]
        if len(after_hours) == 1:
            entry = after_hours[0]
            alerts.append(
                _alert(
                    "after_hours_access",
                    "medium",
                    f"After-hours access detected for user {user_id}",
                    {"access_time": str(entry["timestamp"]), "action": entry.get("action_type")},
                    [user_id],
                )
            )

    for user_id, entries in by_user.items():
        stamps = [parse_timestamp(entry["timestamp"]) for entry in entries]
        count, started_at = _busiest_window(stamps, rules.rapid_request_window_seconds)
        if count >= rules.rapid_request_threshold:
            alerts.append(
                _alert(
                    "rapid_requests",
                    "medium",
                    f"Rapid request pattern detected for user {user_id}",
                    {
                        "request_count": count,
                        "time_window_seconds": rules.rapid_request_window_seconds,
                        "start_time": started_at.isoformat() if started_at else None,
                    },
                    [user_id],
                )
            )

    escalation = [re.compile(pattern, re.IGNORECASE) for pattern in rules.privilege_escalation_patterns]
    for log in logs:
        serialized = _serialize(log).lower()
        for pattern in escalation:
            if pattern.search(serialized):
                alerts.append(
                    _alert(
                        "privilege_escalation_attempt",
                        "critical",
                        "Potential privilege escalation attempt detected",
                        {"user_id": log.get("user_id"), "action": log.get("action_type"), "pattern": pattern.pattern},
                        [log.get("user_id")],
                    )
                )

    return alerts


def calculate_user_stats(logs: Sequence[LogRecord], top: int = 5) -> UserStats:
    daily: Counter[str] = Counter()
    actions: Counter[str] = Counter()
    hours: Counter[int] = Counter()
    for log in logs:
        moment = parse_timestamp(log["timestamp"])
        daily[moment.date().isoformat()] += 1
        actions[str(log.get("action_type"))] += 1
        hours[moment.hour] += 1

    return UserStats(
        avg_requests_per_day=(sum(daily.values()) / len(daily)) if daily else 0.0,
        common_actions=[action for action, _ in actions.most_common(top)],
        typical_hours=[hour for hour, _ in hours.most_common(top)],
    )


def detect_anomalies(user_data: Sequence[LogRecord], rules: Optional[AnalysisRules] = None) -> list[SecurityAlert]:
    rules = rules or AnalysisRules()
    alerts: list[SecurityAlert] = []

    for user_id, entries in _group_by_user(user_data).items():
        ordered = sorted(entries, key=lambda entry: parse_timestamp(entry["timestamp"]))
        stats = calculate_user_stats(ordered, top=rules.common_action_count)
        recent = [str(entry.get("action_type")) for entry in ordered[-rules.recent_action_count:]]
        unusual = [action for action in recent if action not in stats.common_actions]
        if len(unusual) >= rules.unusual_action_threshold:
            alerts.append(
                _alert(
                    "unusual_behavior",
                    "medium",
                    f"Unusual action pattern detected for user {user_id}",
                    {"unusual_actions": unusual, "typical_actions": stats.common_actions},
                    [user_id],
                )
            )

    return alerts


def check_patterns(logs: Sequence[LogRecord], patterns: Sequence[str]) -> list[SecurityAlert]:
    compiled = [(pattern, re.compile(pattern, re.IGNORECASE)) for pattern in patterns]
    alerts: list[SecurityAlert] = []
    for pattern, regex in compiled:
        for log in logs:
            if regex.search(_serialize(log)):
                alerts.append(
                    _alert(
                        "pattern_match",
                        "high",
                        f"Security pattern matched: {pattern}",
                        {"pattern": pattern, "user_id": log.get("user_id"), "timestamp": log.get("timestamp")},
                        [log.get("user_id")],
                    )
                )
    return alerts


# ---------- Worker ----------


@dataclass(frozen=True)
class AnalysisRequest:
    type: str
    data: Mapping[str, Any]
    request_id: str


@dataclass(frozen=True)
class AnalysisResponse:
    type: Literal["result", "error"]
    request_id: str
    data: Optional[list[SecurityAlert]] = None
    error: Optional[str] = None


class SecurityAnalysisWorker:
    """Runs analysis requests off the event loop thread."""

    def __init__(self, max_workers: int = 1, rules: Optional[AnalysisRules] = None) -> None:
        self.rules = rules or AnalysisRules()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="security-analysis")

    def handle(self, request: AnalysisRequest) -> AnalysisResponse:
        try:
            if request.type == "analyzeLogs":
                time_range = request.data.get("time_range")
                if time_range is not None:
                    time_range = (time_range.get("start"), time_range.get("end"))
                result = analyze_logs(request.data.get("logs", []), time_range, self.rules)
            elif request.type == "detectAnomalies":
                result = detect_anomalies(request.data.get("user_data", []), self.rules)
            elif request.type == "checkPatterns":
                result = check_patterns(request.data.get("logs", []), request.data.get("patterns", []))
            else:
                raise ValueError(f"Unknown analysis type: {request.type}")
        except (ValueError, KeyError, TypeError, AttributeError, re.error) as exc:
            logger.warning(
                "Security analysis request failed",
                extra={"event": "security_analysis_failed", "request_id": request.request_id, "reason": str(exc)},
            )
            return AnalysisResponse(type="error", request_id=request.request_id, error=str(exc) or type(exc).__name__)

        logger.info(
            "Security analysis complete",
            extra={"event": "security_analysis", "request_id": request.request_id},
        )
        return AnalysisResponse(type="result", request_id=request.request_id, data=result)

    def submit(self, request: AnalysisRequest) -> Future[AnalysisResponse]:
        return self._executor.submit(self.handle, request)

    async def run(self, request: AnalysisRequest) -> AnalysisResponse:
        return await asyncio.wrap_future(self.submit(request))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
