from pathlib import Path

from fastapi.testclient import TestClient
import pytest

from caresync.config import settings
from caresync.db import init_db, reset_database_engine
from caresync.main import create_app
from caresync.performance import (
    APIMetric,
    MetricThreshold,
    PerformanceMetric,
    PerformanceMonitor,
    timed_api_call,
)
from caresync.security import create_access_token
from caresync.services import build_services


class FakeClock:
    def __init__(self, now: float = 1_760_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    test_db = tmp_path / "caresync-performance-test.db"
    test_url = f"sqlite:///{test_db}"

    object.__setattr__(settings, "database_url", test_url)
    reset_database_engine(test_url)
    init_db()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        reset_database_engine(original_db_url)


def _metric(name: str, value: float, unit: str = "ms") -> PerformanceMetric:
    return PerformanceMetric(name=name, value=value, unit=unit, timestamp=0.0)


def _api(endpoint: str, duration_ms: float, status: int = 200) -> APIMetric:
    return APIMetric(endpoint=endpoint, method="GET", duration_ms=duration_ms, status=status, timestamp=0.0)


def test_threshold_levels():
    threshold = MetricThreshold(warning=100, critical=300)

    assert threshold.level(99.9) == "ok"
    assert threshold.level(100) == "warning"
    assert threshold.level(300) == "critical"

    with pytest.raises(ValueError):
        MetricThreshold(warning=10, critical=5)


def test_alerts_are_raised_and_published():
    monitor = PerformanceMonitor(clock=FakeClock())
    received = []
    unsubscribe = monitor.subscribe(received.append)

    assert monitor.record_metric(_metric("system_load", 50, "%")) is None
    alert = monitor.record_metric(_metric("system_load", 75, "%"))
    assert alert.level == "warning"
    assert alert.threshold == 70

    unsubscribe()
    critical = monitor.record_metric(_metric("system_load", 95, "%"))
    assert critical.level == "critical"

    assert received == [alert]
    assert monitor.recent_alerts() == [alert, critical]


def test_metrics_without_threshold_never_alert():
    monitor = PerformanceMonitor()
    assert monitor.record_metric(_metric("cache_hits", 10_000, "count")) is None
    assert len(monitor.get_all_metrics()) == 1


def test_failing_subscriber_does_not_break_recording():
    monitor = PerformanceMonitor()
    received = []

    def broken(_alert) -> None:
        raise RuntimeError("subscriber down")

    monitor.subscribe(broken)
    monitor.subscribe(received.append)

    alert = monitor.record_api_metric(_api("/api/slow", 5000))
    assert alert.level == "critical"
    assert received == [alert]


def test_buffers_are_bounded():
    monitor = PerformanceMonitor(max_metrics=3)
    for index in range(5):
        monitor.record_metric(_metric("custom", index))
        monitor.record_api_metric(_api("/api/x", float(index)))

    assert [metric.value for metric in monitor.get_all_metrics()] == [2, 3, 4]
    assert monitor.get_average_api_time() == pytest.approx(3.0)


def test_api_queries():
    monitor = PerformanceMonitor()
    assert monitor.get_average_api_time() == 0.0

    monitor.record_api_metric(_api("/api/a", 10))
    monitor.record_api_metric(_api("/api/b", 30))
    monitor.record_api_metric(_api("/api/a", 20))

    assert monitor.get_average_api_time() == pytest.approx(20.0)
    assert [metric.duration_ms for metric in monitor.get_api_metrics_by_endpoint("/api/a")] == [10, 20]
    assert [metric.endpoint for metric in monitor.get_slowest_api_calls(2)] == ["/api/b", "/api/a"]

    summary = monitor.get_summary()
    assert summary["total_api_metrics"] == 3
    assert summary["slowest_api_calls"][0]["duration_ms"] == 30

    monitor.clear()
    assert monitor.get_summary()["total_api_metrics"] == 0


def test_web_vitals():
    monitor = PerformanceMonitor()

    assert monitor.record_web_vital("lcp", 3000).level == "warning"
    assert monitor.record_web_vital("cls", 0.05) is None
    assert monitor.record_web_vital("cls", 0.06).level == "warning"

    vitals = monitor.get_core_web_vitals()
    assert vitals.lcp == 3000
    assert vitals.cls == pytest.approx(0.11)
    assert vitals.fid is None

    with pytest.raises(ValueError):
        monitor.record_web_vital("inp", 10)


def test_custom_threshold():
    monitor = PerformanceMonitor()
    monitor.set_threshold("queue_depth", 10, 50)

    assert monitor.threshold_for("queue_depth") == MetricThreshold(10, 50)
    assert monitor.record_metric(_metric("queue_depth", 60, "count")).level == "critical"


def test_timed_api_call_records_success_and_failure():
    monitor = PerformanceMonitor()
    ticks = iter([1.0, 1.25, 2.0, 2.5])

    with timed_api_call(monitor, "/api/patients", "get", clock=lambda: next(ticks)) as outcome:
        outcome["status"] = 201
        outcome["size"] = 512

    with pytest.raises(RuntimeError):
        with timed_api_call(monitor, "/api/patients", "post", clock=lambda: next(ticks)):
            raise RuntimeError("network down")

    first, second = monitor.get_api_metrics_by_endpoint("/api/patients")
    assert (first.method, first.status, first.size) == ("GET", 201, 512)
    assert first.duration_ms == pytest.approx(250.0)
    assert (second.method, second.status) == ("POST", 0)
    assert second.duration_ms == pytest.approx(500.0)


def test_performance_endpoints():
    client = TestClient(create_app(build_services(clock=FakeClock())))
    user = {"Authorization": f"Bearer {create_access_token('nurse-1', 'nurse', 'h1')}"}
    admin = {"Authorization": f"Bearer {create_access_token('admin-1', 'admin', 'h1')}"}

    response = client.post("/api/performance/metrics", json={"name": "system_load", "value": 95, "unit": "%"}, headers=user)
    assert response.status_code == 200
    assert response.json()["alert"]["level"] == "critical"

    response = client.post("/api/performance/web-vitals", json={"name": "fid", "value": 50}, headers=user)
    assert response.json() == {"recorded": True, "alert": None}

    assert client.get("/api/performance/summary", headers=user).status_code == 403
    summary = client.get("/api/performance/summary", headers=admin).json()
    assert summary["total_metrics"] == 1
    assert summary["core_web_vitals"]["fid"] == 50

    alerts = client.get("/api/performance/alerts", headers=admin).json()
    assert alerts[-1]["metric"] == "system_load"

    bad = client.put("/api/performance/thresholds/system_load", json={"warning": 90, "critical": 10}, headers=admin)
    assert bad.status_code == 400
    ok = client.put("/api/performance/thresholds/system_load", json={"warning": 96, "critical": 99}, headers=admin)
    assert ok.status_code == 204

    response = client.post("/api/performance/metrics", json={"name": "system_load", "value": 95, "unit": "%"}, headers=user)
    assert response.json()["alert"] is None

    assert client.delete("/api/performance/metrics", headers=admin).status_code == 204
    assert client.get("/api/performance/summary", headers=admin).json()["total_metrics"] == 0
