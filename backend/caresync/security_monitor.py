from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import re
import threading
import time
from typing import Any, Literal, Optional
import uuid

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .db import get_db
from .metrics import SECURITY_ALERTS_TOTAL
from .rate_limit import Clock, ViolationTracker

logger = logging.getLogger("caresync.security.monitor")

Severity = Literal["low", "medium", "high", "critical"]
ThreatAction = Literal["alert", "block", "log", "none"]
SEVERITIES = ("low", "medium", "high", "critical")


@dataclass(frozen=True)
class ThreatIndicator:
    type: str
    threshold: int
    window_seconds: float
    action: ThreatAction


DEFAULT_INDICATORS: dict[str, ThreatIndicator] = {
    indicator.type: indicator
    for indicator in (
        ThreatIndicator("failed_login", 5, 300, "block"),
        ThreatIndicator("rapid_requests", 100, 60, "alert"),
        ThreatIndicator("data_export", 10, 3600, "alert"),
        ThreatIndicator("permission_escalation", 3, 600, "block"),
        ThreatIndicator("sql_injection_attempt", 1, 60, "block"),
    )
}

SQL_INJECTION_PATTERNS = (
    re.compile(r"\b(UNION|SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|EXECUTE)\b", re.IGNORECASE),
    re.compile(r"(-{2}|/\*|\*/|;)"),
    re.compile(r"(xp_|sp_)", re.IGNORECASE),
)

XSS_PATTERNS = (
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe", re.IGNORECASE),
    re.compile(r"<object", re.IGNORECASE),
    re.compile(r"<embed", re.IGNORECASE),
)


@dataclass(frozen=True)
class SecurityEventRecord:
    id: str
    event_type: str
    severity: Severity
    description: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    hospital_id: Optional[str] = None
    resolved: bool = False


@dataclass(frozen=True)
class ThreatDetection:
    detected: bool
    action: ThreatAction
    count: int


def _row_to_event(row: Any) -> SecurityEventRecord:
    occurred_at = row["occurred_at"]
    if isinstance(occurred_at, str):
        occurred_at = datetime.fromisoformat(occurred_at)
    # SQLite drops the offset; stored values are always UTC.
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    return SecurityEventRecord(
        id=row["id"],
        event_type=row["event_type"],
        severity=row["severity"],
        description=row["description"],
        timestamp=occurred_at,
        metadata=json.loads(row["metadata_json"] or "{}"),
        user_id=row["user_id"],
        ip_address=row["ip_address"],
        hospital_id=row["hospital_id"],
        resolved=bool(row["resolved"]),
    )


class SecurityMonitor:
    """Threat counters, input screening, and the persisted security event log."""

    def __init__(
        self,
        clock: Clock = time.time,
        max_events: int = 1000,
        indicators: Optional[dict[str, ThreatIndicator]] = None,
    ) -> None:
        self._clock = clock
        self._events: deque[SecurityEventRecord] = deque(maxlen=max_events)
        self._events_lock = threading.Lock()
        self.indicators = {**DEFAULT_INDICATORS, **(indicators or {})}
        self.tracker = ViolationTracker(clock=clock)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ---------- Event log ----------
    def log_security_event(
        self,
        event_type: str,
        severity: Severity,
        description: str,
        metadata: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
        hospital_id: Optional[str] = None,
    ) -> SecurityEventRecord:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        metadata = dict(metadata or {})
        event = SecurityEventRecord(
            id=str(uuid.uuid4()),
            event_type=event_type,
            severity=severity,
            description=description,
            timestamp=self._now(),
            metadata=metadata,
            user_id=user_id,
            ip_address=metadata.get("ip_address"),
            hospital_id=hospital_id,
        )
        with self._events_lock:
            self._events.append(event)
        SECURITY_ALERTS_TOTAL.labels(type=event_type).inc()

        try:
            with get_db() as session:
                session.execute(
                    text(
                        """
                        INSERT INTO security_events (
                            id, event_type, severity, user_id, ip_address, hospital_id,
                            description, metadata_json, occurred_at, resolved
                        )
                        VALUES (
                            :id, :event_type, :severity, :user_id, :ip_address, :hospital_id,
                            :description, :metadata_json, :occurred_at, :resolved
                        )
                        """
                    ),
                    {
                        "id": event.id,
                        "event_type": event.event_type,
                        "severity": event.severity,
                        "user_id": event.user_id,
                        "ip_address": event.ip_address,
                        "hospital_id": event.hospital_id,
                        "description": event.description,
                        "metadata_json": json.dumps(metadata, default=str),
                        "occurred_at": event.timestamp,
                        "resolved": False,
                    },
                )
        except SQLAlchemyError:
            logger.exception(
                "Failed to persist security event",
                extra={"event": "security_event_persist_failed", "threat_type": event_type},
            )

        log = logger.error if severity == "critical" else logger.warning
        log(
            description,
            extra={
                "event": "security_event",
                "threat_type": event_type,
                "alert_level": severity,
                "user_id": user_id,
                "ip": event.ip_address,
            },
        )
        return event

    def get_recent_events(self, limit: int = 10) -> list[SecurityEventRecord]:
        with self._events_lock:
            events = list(self._events)
        return events[-limit:] if limit > 0 else []

    def clear_old_events(self, older_than_seconds: float = 86400) -> int:
        cutoff = self._now() - timedelta(seconds=older_than_seconds)
        with self._events_lock:
            kept = [event for event in self._events if event.timestamp > cutoff]
            removed = len(self._events) - len(kept)
            self._events.clear()
            self._events.extend(kept)
        return removed

    # ---------- Detection ----------
    def detect_threat(
        self,
        threat_type: str,
        subject_id: str,
        metadata: Optional[dict[str, Any]] = None,
        hospital_id: Optional[str] = None,
    ) -> ThreatDetection:
        indicator = self.indicators.get(threat_type)
        if indicator is None:
            return ThreatDetection(detected=False, action="none", count=0)

        record = self.tracker.record(f"{threat_type}:{subject_id}", indicator.window_seconds)
        detected = record.count >= indicator.threshold
        if detected:
            self.log_security_event(
                threat_type,
                "high",
                f"Threat detected: {threat_type}",
                {**(metadata or {}), "count": record.count, "threshold": indicator.threshold},
                user_id=subject_id,
                hospital_id=hospital_id,
            )
        return ThreatDetection(
            detected=detected,
            action=indicator.action if detected else "none",
            count=record.count,
        )

    def check_for_sql_injection(self, value: str, hospital_id: Optional[str] = None) -> bool:
        suspicious = any(pattern.search(value) for pattern in SQL_INJECTION_PATTERNS)
        if suspicious:
            self.log_security_event(
                "sql_injection_attempt",
                "critical",
                "Potential SQL injection detected",
                {"input": value[:100]},
                hospital_id=hospital_id,
            )
        return suspicious

    def check_for_xss(self, value: str, hospital_id: Optional[str] = None) -> bool:
        suspicious = any(pattern.search(value) for pattern in XSS_PATTERNS)
        if suspicious:
            self.log_security_event(
                "xss_attempt",
                "high",
                "Potential XSS attack detected",
                {"input": value[:100]},
                hospital_id=hospital_id,
            )
        return suspicious

    # ---------- Persisted queries ----------
    def get_security_events(
        self,
        hospital_id: str,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> list[SecurityEventRecord]:
        query = "SELECT * FROM security_events WHERE hospital_id = :hospital_id"
        params: dict[str, Any] = {"hospital_id": hospital_id, "limit": limit}
        if severity:
            query += " AND severity = :severity"
            params["severity"] = severity
        query += " ORDER BY occurred_at DESC LIMIT :limit"

        with get_db() as session:
            rows = session.execute(text(query), params).mappings().all()
        return [_row_to_event(row) for row in rows]

    def generate_security_report(self, hospital_id: str, days: int = 30) -> dict[str, Any]:
        if days < 1:
            raise ValueError("days must be at least 1")
        end = self._now()
        start = end - timedelta(days=days)
        with get_db() as session:
            rows = session.execute(
                text(
                    """
                    SELECT event_type, severity
                    FROM security_events
                    WHERE hospital_id = :hospital_id AND occurred_at >= :start
                    """
                ),
                {"hospital_id": hospital_id, "start": start},
            ).mappings().all()

        by_type = Counter(row["event_type"] for row in rows)
        by_severity = Counter(row["severity"] for row in rows)
        critical = by_severity.get("critical", 0)
        if critical > 5:
            risk_level = "high"
        elif critical > 0:
            risk_level = "medium"
        else:
            risk_level = "low"

        return {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "total_events": len(rows),
            "critical_events": critical,
            "events_by_type": dict(by_type),
            "events_by_severity": dict(by_severity),
            "average_events_per_day": round(len(rows) / days),
            "risk_level": risk_level,
        }

    def resolve_security_event(self, event_id: str) -> bool:
        with get_db() as session:
            result = session.execute(
                text("UPDATE security_events SET resolved = :resolved WHERE id = :id"),
                {"resolved": True, "id": event_id},
            )
        return bool(result.rowcount)
