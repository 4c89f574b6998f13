"""Performance sampling with warning/critical threshold alerts."""

from __future__ import annotations

from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
import logging
import threading
import time
from typing import Any, Callable, Iterator, Literal, Optional

from .metrics import PERFORMANCE_ALERTS_TOTAL

logger = logging.getLogger("caresync.performance")

AlertLevel = Literal["ok", "warning", "critical"]
Clock = Callable[[], float]

WEB_VITALS = ("lcp", "fid", "cls", "ttfb", "fcp")
API_RESPONSE_TIME = "api_response_time"


@dataclass(frozen=True)
class MetricThreshold:
    warning: float
    critical: float

    def __post_init__(self) -> None:
        if self.critical < self.warning:
            raise ValueError("critical threshold must not be below warning threshold")

    def level(self, value: float) -> AlertLevel:
        if value >= self.critical:
            return "critical"
        if value >= self.warning:
            return "warning"
        return "ok"


DEFAULT_THRESHOLDS: dict[str, MetricThreshold] = {
    API_RESPONSE_TIME: MetricThreshold(1000, 3000),
    "lcp": MetricThreshold(2500, 4000),
    "fid": MetricThreshold(100, 300),
    "cls": MetricThreshold(0.1, 0.25),
    "ttfb": MetricThreshold(800, 1800),
    "fcp": MetricThreshold(1800, 3000),
    "system_load": MetricThreshold(70, 90),
    "error_rate": MetricThreshold(2, 5),
}


@dataclass(frozen=True)
class PerformanceMetric:
    name: str
    value: float
    unit: str
    timestamp: float
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class APIMetric:
    endpoint: str
    method: str
    duration_ms: float
    status: int
    timestamp: float
    size: Optional[int] = None


@dataclass
class CoreWebVitals:
    lcp: Optional[float] = None
    fid: Optional[float] = None
    cls: Optional[float] = None
    ttfb: Optional[float] = None
    fcp: Optional[float] = None


@dataclass(frozen=True)
class PerformanceAlert:
    metric: str
    value: float
    level: AlertLevel
    threshold: float
    timestamp: float
    context: dict[str, Any] = field(default_factory=dict)


AlertCallback = Callable[[PerformanceAlert], None]


class PerformanceMonitor:
    """Keeps bounded metric buffers and notifies subscribers when a threshold is crossed."""

    def __init__(
        self,
        max_metrics: int = 1000,
        thresholds: Optional[dict[str, MetricThreshold]] = None,
        clock: Clock = time.time,
    ) -> None:
        self.max_metrics = max_metrics
        self._clock = clock
        self._metrics: deque[PerformanceMetric] = deque(maxlen=max_metrics)
        self._api_metrics: deque[APIMetric] = deque(maxlen=max_metrics)
        self._alerts: deque[PerformanceAlert] = deque(maxlen=max_metrics)
        self._vitals = CoreWebVitals()
        self._thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self._subscribers: list[AlertCallback] = []
        self._lock = threading.Lock()

    # ---------- Thresholds / subscribers ----------
    def set_threshold(self, name: str, warning: float, critical: float) -> None:
        self._thresholds[name] = MetricThreshold(warning, critical)

    def threshold_for(self, name: str) -> Optional[MetricThreshold]:
        return self._thresholds.get(name)

    def subscribe(self, callback: AlertCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _evaluate(self, name: str, value: float, context: Optional[dict[str, Any]] = None) -> Optional[PerformanceAlert]:
        threshold = self._thresholds.get(name)
        if threshold is None:
            return None
        level = threshold.level(value)
        if level == "ok":
            return None

        alert = PerformanceAlert(
            metric=name,
            value=value,
            level=level,
            threshold=threshold.critical if level == "critical" else threshold.warning,
            timestamp=self._clock(),
            context=dict(context or {}),
        )
        with self._lock:
            self._alerts.append(alert)
        PERFORMANCE_ALERTS_TOTAL.labels(metric=name, level=level).inc()
        logger.warning(
            "Performance threshold crossed",
            extra={"event": "performance_alert", "metric": name, "alert_level": level},
        )
        for callback in list(self._subscribers):
            try:
                callback(alert)
            except Exception:
                logger.exception(
                    "Performance alert subscriber failed",
                    extra={"event": "performance_subscriber_failed", "metric": name},
                )
        return alert

    # ---------- Recording ----------
    def record_metric(self, metric: PerformanceMetric) -> Optional[PerformanceAlert]:
        with self._lock:
            self._metrics.append(metric)
        return self._evaluate(metric.name, metric.value, metric.context)

    def record_api_metric(self, metric: APIMetric) -> Optional[PerformanceAlert]:
        with self._lock:
            self._api_metrics.append(metric)
        return self._evaluate(
            API_RESPONSE_TIME,
            metric.duration_ms,
            {"endpoint": metric.endpoint, "method": metric.method, "status": metric.status},
        )

    def record_web_vital(self, name: str, value: float) -> Optional[PerformanceAlert]:
        if name not in WEB_VITALS:
            raise ValueError(f"Unknown web vital: {name}")
        with self._lock:
            if name == "cls":
                # Layout shift accumulates over the page lifetime.
                self._vitals.cls = (self._vitals.cls or 0.0) + value
                value = self._vitals.cls
            else:
                setattr(self._vitals, name, value)
        return self._evaluate(name, value)

    # ---------- Queries ----------
    def get_core_web_vitals(self) -> CoreWebVitals:
        with self._lock:
            return CoreWebVitals(**asdict(self._vitals))

    def get_average_api_time(self) -> float:
        with self._lock:
            if not self._api_metrics:
                return 0.0
            return sum(metric.duration_ms for metric in self._api_metrics) / len(self._api_metrics)

    def get_api_metrics_by_endpoint(self, endpoint: str) -> list[APIMetric]:
        with self._lock:
            return [metric for metric in self._api_metrics if metric.endpoint == endpoint]

    def get_slowest_api_calls(self, limit: int = 10) -> list[APIMetric]:
        with self._lock:
            ordered = sorted(self._api_metrics, key=lambda metric: metric.duration_ms, reverse=True)
        return ordered[:limit]

    def get_all_metrics(self) -> list[PerformanceMetric]:
        with self._lock:
            return list(self._metrics)

    def recent_alerts(self, limit: int = 50) -> list[PerformanceAlert]:
        with self._lock:
            alerts = list(self._alerts)
        return alerts[-limit:] if limit > 0 else []

    def get_summary(self) -> dict[str, Any]:
        with self._lock:
            total_metrics = len(self._metrics)
            total_api_metrics = len(self._api_metrics)
        return {
            "core_web_vitals": asdict(self.get_core_web_vitals()),
            "average_api_time_ms": self.get_average_api_time(),
            "total_metrics": total_metrics,
            "total_api_metrics": total_api_metrics,
            "slowest_api_calls": [asdict(metric) for metric in self.get_slowest_api_calls(5)],
        }

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._api_metrics.clear()
            self._alerts.clear()


@contextmanager
def timed_api_call(
    monitor: PerformanceMonitor,
    endpoint: str,
    method: str = "GET",
    clock: Clock = time.perf_counter,
) -> Iterator[dict[str, Any]]:
    """Time the body and record an :class:`APIMetric`.

    The body may set ``status`` and ``size`` on the yielded dict. If it raises,
    the call is recorded with status 0 and the exception propagates.
    """
    outcome: dict[str, Any] = {"status": 200, "size": None}
    started = clock()
    try:
        yield outcome
    except BaseException:
        outcome["status"] = 0
        raise
    finally:
        monitor.record_api_metric(
            APIMetric(
                endpoint=endpoint,
                method=method.upper(),
                duration_ms=(clock() - started) * 1000.0,
                status=int(outcome["status"]),
                timestamp=time.time(),
                size=outcome["size"],
            )
        )
