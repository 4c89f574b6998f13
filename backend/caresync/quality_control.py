"""Westgard multi-rule checks for laboratory quality-control runs."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Literal, Optional, Sequence

WESTGARD_RULES = ("1_2s", "1_3s", "2_2s", "R_4s", "4_1s", "10x")


class QCValidationError(ValueError):
    """Raised when a QC run cannot be evaluated."""


@dataclass(frozen=True)
class QCRule:
    test_type: str
    control_level: str
    westgard_rules: tuple[str, ...] = WESTGARD_RULES
    expected_mean: Optional[float] = None
    standard_deviation: Optional[float] = None


@dataclass(frozen=True)
class WestgardResult:
    passed: bool
    violated_rules: list[str] = field(default_factory=list)
    mean: float = 0.0
    standard_deviation: float = 0.0


def is_in_range(value: float, low: Optional[float], high: Optional[float]) -> bool:
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def classify_qc_result(measured: float, low: float, high: float) -> Literal["pass", "fail"]:
    return "pass" if is_in_range(measured, low, high) else "fail"


def _statistics(measurements: Sequence[float], rule: QCRule) -> tuple[float, float]:
    if rule.expected_mean is not None and rule.standard_deviation is not None:
        return rule.expected_mean, rule.standard_deviation
    if len(measurements) < 2:
        raise QCValidationError("At least two measurements are needed without a target mean and SD")
    mean = sum(measurements) / len(measurements)
    variance = sum((value - mean) ** 2 for value in measurements) / (len(measurements) - 1)
    return mean, math.sqrt(variance)


def _same_side(values: Sequence[float], upper: float, lower: float) -> bool:
    return all(value > upper for value in values) or all(value < lower for value in values)


def validate_westgard_rules(measurements: Sequence[float], rule: QCRule) -> WestgardResult:
    """Evaluate the latest run against the rule's Westgard codes.

    Target mean and SD come from the rule when both are set, otherwise from the
    sample itself.
    """
    if not measurements:
        raise QCValidationError("No measurements supplied")
    unknown = [code for code in rule.westgard_rules if code not in WESTGARD_RULES]
    if unknown:
        raise QCValidationError(f"Unknown Westgard rule(s): {', '.join(unknown)}")

    mean, sd = _statistics(measurements, rule)
    if sd <= 0:
        raise QCValidationError("Standard deviation must be positive")

    latest = measurements[-1]
    violated: list[str] = []
    for code in rule.westgard_rules:
        if code == "1_2s":
            hit = abs(latest - mean) > 2 * sd
        elif code == "1_3s":
            hit = abs(latest - mean) > 3 * sd
        elif code == "2_2s":
            hit = len(measurements) >= 2 and _same_side(measurements[-2:], mean + 2 * sd, mean - 2 * sd)
        elif code == "R_4s":
            # One control above +2SD and the next below -2SD (or the reverse).
            if len(measurements) >= 2:
                previous = measurements[-2]
                hit = (previous > mean + 2 * sd and latest < mean - 2 * sd) or (
                    previous < mean - 2 * sd and latest > mean + 2 * sd
                )
            else:
                hit = False
        elif code == "4_1s":
            hit = len(measurements) >= 4 and _same_side(measurements[-4:], mean + sd, mean - sd)
        else:
            hit = len(measurements) >= 10 and _same_side(measurements[-10:], mean, mean)
        if hit:
            violated.append(code)

    return WestgardResult(passed=not violated, violated_rules=violated, mean=mean, standard_deviation=sd)
