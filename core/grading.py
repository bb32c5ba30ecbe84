"""
grading.py -- Turns a condition rubric into a ConditionGrade.

Pure functions only. No I/O, no clock, no randomness: the same assessment
always yields the same grade.
"""

from .models import ConditionAssessment, ConditionGrade

# Descending thresholds on the ratio of passing checks.
GRADE_THRESHOLDS: list[tuple[float, ConditionGrade]] = [
    (0.9, ConditionGrade.excellent),
    (0.7, ConditionGrade.good),
    (0.5, ConditionGrade.fair),
]

CONDITION_MULTIPLIERS: dict[ConditionGrade, float] = {
    ConditionGrade.excellent: 1.00,
    ConditionGrade.good: 0.75,
    ConditionGrade.fair: 0.50,
    ConditionGrade.poor: 0.25,
}

_missing = set(ConditionGrade) - set(CONDITION_MULTIPLIERS)
if _missing:
    raise RuntimeError(f"CONDITION_MULTIPLIERS is missing grades: {sorted(g.value for g in _missing)}")


def _checklist(assessment: ConditionAssessment) -> list[bool]:
    """The five graded signals, each True when the answer is the healthy one."""
    return [
        assessment.screen_condition,
        not assessment.cosmetic_damage,
        assessment.keyboard_trackpad,
        True if assessment.battery_health is None else assessment.battery_health,
        True if assessment.ports_working is None else assessment.ports_working,
    ]


def grade_condition(assessment: ConditionAssessment) -> ConditionGrade:
    """Grade a device from its rubric answers.

    A device that does not power on is always poor, whatever else is answered.
    Otherwise the share of passing checks is mapped through GRADE_THRESHOLDS.
    find_my_disabled is an eligibility question, not a condition one, and is
    ignored here.
    """
    if not assessment.power_on:
        return ConditionGrade.poor

    checks = _checklist(assessment)
    ratio = sum(1 for c in checks if c) / len(checks)

    for threshold, grade in GRADE_THRESHOLDS:
        if ratio >= threshold:
            return grade
    return ConditionGrade.poor


def condition_multiplier(grade: ConditionGrade) -> float:
    return CONDITION_MULTIPLIERS[grade]
