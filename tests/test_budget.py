"""Tests for the time budget controller."""

import pytest

from codeforge.budget import (
    BUDGET_PROFILES,
    DEFAULT_BUDGET,
    GLOBAL_DEADLINE_MS,
    TimeoutManager,
    estimate_complexity,
    should_skip_non_critical,
)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestProfiles:
    def test_budgets_fit_deadline(self):
        assert DEFAULT_BUDGET.total() <= GLOBAL_DEADLINE_MS
        for profile in BUDGET_PROFILES.values():
            assert profile.total() <= GLOBAL_DEADLINE_MS

    @pytest.mark.parametrize(
        "prompt,expected",
        [
            ("Build a todo app", "simple"),
            ("x" * 301, "medium"),
            ("x" * 1001, "complex"),
            ("An ENTERPRISE dashboard", "complex"),
            ("Add authentication to the page", "complex"),
        ],
    )
    def test_estimate_complexity(self, prompt, expected):
        assert estimate_complexity(prompt) == expected


class TestTimeoutManager:
    def test_thresholds_are_cumulative(self):
        clock = FakeClock()
        tm = TimeoutManager(clock=clock)

        clock.now = 100_000
        assert not tm.check_timeout().is_warning

        clock.now = 270_000
        check = tm.check_timeout()
        assert check.is_warning and not check.is_emergency

        clock.now = 285_000
        check = tm.check_timeout()
        assert check.is_warning and check.is_emergency and not check.is_critical
        assert should_skip_non_critical(check)

        clock.now = 295_000
        check = tm.check_timeout()
        assert check.is_critical
        assert check.remaining == 5_000

    def test_warning_recorded_once(self):
        clock = FakeClock()
        tm = TimeoutManager(clock=clock)
        clock.now = 271_000
        tm.check_timeout()
        clock.now = 272_000
        tm.check_timeout()
        assert tm.warnings == ["WARNING: Approaching timeout"]

    def test_should_skip_stage(self):
        clock = FakeClock()
        tm = TimeoutManager(clock=clock)
        assert not tm.should_skip_stage("research")
        clock.now = GLOBAL_DEADLINE_MS - DEFAULT_BUDGET.research + 1
        assert tm.should_skip_stage("research")
        assert not tm.should_skip_stage("unknown-stage")

    def test_adapt_budget_replaces_profile(self):
        tm = TimeoutManager(clock=FakeClock())
        budget = tm.adapt_budget("simple")
        assert budget == BUDGET_PROFILES["simple"]
        assert tm.budget.code_generation == BUDGET_PROFILES["simple"].code_generation

    def test_stage_records(self):
        clock = FakeClock()
        tm = TimeoutManager(clock=clock)
        tm.start_stage("code_generation")
        clock.now = 1_500
        assert tm.end_stage("code_generation") == 1_500
        assert tm.end_stage("never-started") == 0.0
        summary = tm.get_summary()
        assert summary["elapsed"] == 1_500
        assert summary["stages"][0]["name"] == "code_generation"
        assert summary["percentage_used"] == pytest.approx(0.5)
