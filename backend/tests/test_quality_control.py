from pathlib import Path

from fastapi.testclient import TestClient
import pytest

from caresync.config import settings
from caresync.db import init_db, reset_database_engine
from caresync.main import create_app
from caresync.quality_control import (
    QCRule,
    QCValidationError,
    classify_qc_result,
    is_in_range,
    validate_westgard_rules,
)
from caresync.security import create_access_token
from caresync.services import build_services


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    test_db = tmp_path / "caresync-qc-test.db"
    test_url = f"sqlite:///{test_db}"

    object.__setattr__(settings, "database_url", test_url)
    reset_database_engine(test_url)
    init_db()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        reset_database_engine(original_db_url)


def _rule(*codes: str, mean: float = 100.0, sd: float = 2.0) -> QCRule:
    return QCRule(
        test_type="glucose",
        control_level="normal",
        westgard_rules=codes or ("1_2s", "1_3s", "2_2s", "R_4s", "4_1s", "10x"),
        expected_mean=mean,
        standard_deviation=sd,
    )


def test_range_helpers():
    assert is_in_range(5, 1, 10) is True
    assert is_in_range(10, 1, 10) is True
    assert is_in_range(0.5, 1, None) is False
    assert is_in_range(99, None, None) is True
    assert classify_qc_result(11, 1, 10) == "fail"


def test_in_control_run_passes():
    result = validate_westgard_rules([100, 101, 99, 100.5, 99.5], _rule())

    assert result.passed is True
    assert result.violated_rules == []
    assert result.mean == 100
    assert result.standard_deviation == 2


@pytest.mark.parametrize(
    ("measurements", "codes", "expected"),
    [
        ([100, 104.5], ("1_2s",), ["1_2s"]),
        ([100, 106.5], ("1_2s", "1_3s"), ["1_2s", "1_3s"]),
        ([104.5, 105], ("2_2s",), ["2_2s"]),
        ([104.5, 95.5], ("2_2s",), []),
        ([104.5, 95.5], ("R_4s",), ["R_4s"]),
        ([95.5, 104.5], ("R_4s",), ["R_4s"]),
        ([102.5, 103, 102.1, 104], ("4_1s",), ["4_1s"]),
        ([102.5, 103, 101.9, 104], ("4_1s",), []),
        ([99] * 10, ("10x",), ["10x"]),
        ([99] * 9 + [101], ("10x",), []),
    ],
)
def test_individual_rules(measurements, codes, expected):
    assert validate_westgard_rules(measurements, _rule(*codes)).violated_rules == expected


def test_sample_statistics_used_without_targets():
    rule = QCRule(test_type="glucose", control_level="high", westgard_rules=("1_2s",))
    result = validate_westgard_rules([10, 12, 14], rule)

    assert result.mean == pytest.approx(12)
    assert result.standard_deviation == pytest.approx(2)
    assert result.passed is True


@pytest.mark.parametrize(
    ("measurements", "rule"),
    [
        ([], _rule()),
        ([100], _rule("9_9s")),
        ([100], QCRule(test_type="glucose", control_level="low")),
        ([5, 5, 5], QCRule(test_type="glucose", control_level="low")),
    ],
)
def test_invalid_runs_raise(measurements, rule):
    with pytest.raises(QCValidationError):
        validate_westgard_rules(measurements, rule)


def test_qc_endpoint():
    client = TestClient(create_app(build_services()))
    tech = {"Authorization": f"Bearer {create_access_token('lab-1', 'lab_technician', 'h1')}"}
    patient = {"Authorization": f"Bearer {create_access_token('p-1', 'patient', 'h1')}"}
    body = {
        "test_type": "glucose",
        "measurements": [100, 101, 99, 100, 108],
        "expected_mean": 100,
        "standard_deviation": 2,
        "acceptable_range_min": 90,
        "acceptable_range_max": 105,
    }

    assert client.post("/api/lab/qc/validate", json=body, headers=patient).status_code == 403

    response = client.post("/api/lab/qc/validate", json=body, headers=tech)
    assert response.status_code == 200
    payload = response.json()
    assert payload["passed"] is False
    assert payload["violated_rules"] == ["1_2s", "1_3s"]
    assert payload["range_result"] == "fail"

    response = client.post(
        "/api/lab/qc/validate",
        json={"test_type": "glucose", "measurements": [100], "westgard_rules": ["bogus"]},
        headers=tech,
    )
    assert response.status_code == 400

    response = client.post("/api/lab/qc/validate", json={"test_type": "glucose", "measurements": []}, headers=tech)
    assert response.status_code == 422
