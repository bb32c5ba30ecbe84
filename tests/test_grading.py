"""Unit tests for core/grading.py: pure logic, no I/O, no mocking needed.

Covers:
- fixed rubric scenarios (all healthy, all failing, no power)
- power-off always grades poor
- threshold boundaries (5/5, 4/5, 3/5, 2/5 passing checks)
- optional answers default to healthy
- find_my_disabled never changes the grade
- multiplier table covers every grade
"""

import itertools

from core.grading import CONDITION_MULTIPLIERS, condition_multiplier, grade_condition
from core.models import ConditionAssessment, ConditionGrade

# ---------------------------------------------------------------------------
# Inline data helpers
# ---------------------------------------------------------------------------


def _assessment(**overrides) -> ConditionAssessment:
    """A fully healthy, powered-on device, with overrides applied."""
    fields = dict(
        power_on=True,
        screen_condition=True,
        cosmetic_damage=False,
        keyboard_trackpad=True,
        battery_health=True,
        ports_working=True,
    )
    fields.update(overrides)
    return ConditionAssessment(**fields)


# ---------------------------------------------------------------------------
# TestGradeCondition
# ---------------------------------------------------------------------------


class TestGradeCondition:
    def test_all_healthy_is_excellent(self):
        assert grade_condition(_assessment()) == ConditionGrade.excellent

    def test_all_failing_is_poor(self):
        a = _assessment(
            screen_condition=False,
            cosmetic_damage=True,
            keyboard_trackpad=False,
            battery_health=False,
            ports_working=False,
        )
        assert grade_condition(a) == ConditionGrade.poor

    def test_no_power_is_poor(self):
        """Device that does not power on is poor even with a perfect rubric."""
        a = ConditionAssessment(power_on=False, screen_condition=True, cosmetic_damage=False, keyboard_trackpad=True)
        assert grade_condition(a) == ConditionGrade.poor

    def test_one_failed_check_is_good(self):
        """4/5 = 0.8: below the 0.9 excellent threshold, above 0.7."""
        assert grade_condition(_assessment(cosmetic_damage=True)) == ConditionGrade.good

    def test_two_failed_checks_is_fair(self):
        """3/5 = 0.6."""
        assert grade_condition(_assessment(screen_condition=False, ports_working=False)) == ConditionGrade.fair

    def test_three_failed_checks_is_poor(self):
        """2/5 = 0.4, below the 0.5 fair threshold."""
        a = _assessment(screen_condition=False, ports_working=False, keyboard_trackpad=False)
        assert grade_condition(a) == ConditionGrade.poor

    def test_optional_answers_default_to_healthy(self):
        a = ConditionAssessment(power_on=True, screen_condition=True, cosmetic_damage=False, keyboard_trackpad=True)
        assert grade_condition(a) == ConditionGrade.excellent

    def test_find_my_does_not_affect_grade(self):
        assert grade_condition(_assessment(find_my_disabled=False)) == grade_condition(
            _assessment(find_my_disabled=True)
        )


class TestGradingProperties:
    """Exhaustive checks over every combination of rubric answers."""

    def _all_assessments(self, power_on: bool):
        for screen, damage, keyboard, battery, ports in itertools.product(
            [True, False], [True, False], [True, False], [True, False, None], [True, False, None]
        ):
            yield ConditionAssessment(
                power_on=power_on,
                screen_condition=screen,
                cosmetic_damage=damage,
                keyboard_trackpad=keyboard,
                battery_health=battery,
                ports_working=ports,
            )

    def test_power_off_dominates(self):
        for a in self._all_assessments(power_on=False):
            assert grade_condition(a) == ConditionGrade.poor

    def test_deterministic(self):
        for a in self._all_assessments(power_on=True):
            assert grade_condition(a) == grade_condition(a)

    def test_fixing_a_defect_never_lowers_the_grade(self):
        broken = _assessment(screen_condition=False, cosmetic_damage=True)
        fixed = _assessment(cosmetic_damage=True)
        assert grade_condition(fixed).rank >= grade_condition(broken).rank


class TestMultipliers:
    def test_every_grade_has_a_multiplier(self):
        assert set(CONDITION_MULTIPLIERS) == set(ConditionGrade)

    def test_multiplier_values(self):
        assert condition_multiplier(ConditionGrade.excellent) == 1.0
        assert condition_multiplier(ConditionGrade.good) == 0.75
        assert condition_multiplier(ConditionGrade.fair) == 0.5
        assert condition_multiplier(ConditionGrade.poor) == 0.25

    def test_multipliers_follow_grade_rank(self):
        ordered = sorted(ConditionGrade, key=lambda g: g.rank)
        values = [condition_multiplier(g) for g in ordered]
        assert values == sorted(values)
