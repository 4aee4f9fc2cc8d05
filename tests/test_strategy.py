# Copyright (c) Syntropy Systems
"""Tests for strategy selection."""

import pytest

from polish.errors import NoViableStrategyError
from polish.metrics import normalize
from polish.models import FailedAttempt, MetricResult, ScoreResult, StrategyConfig
from polish.strategy import StrategySelector, builtin_strategy, count_failures


def score_of(*metrics: MetricResult) -> ScoreResult:
    return ScoreResult(score=50, metrics=list(metrics))


def metric(name: str, score: float, weight: float = 1.0, target: float = 100.0) -> MetricResult:
    return MetricResult(name=name, normalized_score=score, weight=weight, target=target)


class TestRanking:
    """Tests for picking the worst metric."""

    def test_worst_weighted_distance_first(self) -> None:
        selector = StrategySelector()
        score = score_of(metric("lint", 90, weight=1), metric("tests", 80, weight=2))

        ranked = selector.rank(score)

        assert [m.name for m in ranked] == ["tests", "lint"]

    def test_weight_beats_raw_gap(self) -> None:
        selector = StrategySelector()
        score = score_of(metric("lint", 50, weight=1), metric("tests", 80, weight=3))

        assert selector.rank(score)[0].name == "tests"

    def test_ties_keep_configuration_order(self) -> None:
        selector = StrategySelector()
        score = score_of(metric("b", 50), metric("a", 50))

        assert [m.name for m in selector.rank(score)] == ["b", "a"]

    def test_perfect_metrics_are_skipped(self) -> None:
        selector = StrategySelector()
        score = score_of(metric("tests", 100), metric("lint", 100, target=95))

        assert selector.rank(score) == []

    def test_headroom_is_measured_on_normalized_scale(self) -> None:
        selector = StrategySelector()
        score = score_of(metric("tests", 90, target=80), metric("lint", 70, target=10))

        assert [m.name for m in selector.rank(score)] == ["lint", "tests"]


def scored(name: str, raw: float, target: float, higher_is_better: bool = True) -> MetricResult:
    return MetricResult(
        name=name,
        raw_value=raw,
        normalized_score=normalize(raw, target, higher_is_better),
        weight=1.0,
        target=target,
        higher_is_better=higher_is_better,
    )


class TestRawTargets:
    """Selection for metrics whose targets are on the raw scale."""

    def test_zero_target_with_errors_is_selected(self) -> None:
        lint = scored("lint", 3, target=0, higher_is_better=False)
        assert lint.normalized_score == 0

        strategy = StrategySelector().select_strategy(score_of(lint), [])

        assert strategy.focus == "lint"

    def test_zero_target_met_is_skipped(self) -> None:
        lint = scored("lint", 0, target=0, higher_is_better=False)

        with pytest.raises(NoViableStrategyError):
            _ = StrategySelector().select_strategy(score_of(lint), [])

    def test_lower_is_better_with_remaining_errors_is_selected(self) -> None:
        lint = scored("lint", 8, target=10, higher_is_better=False)
        assert lint.normalized_score == pytest.approx(20.0)

        strategy = StrategySelector().select_strategy(score_of(lint), [])

        assert strategy.name == "fix-lint"

    def test_worse_lint_outranks_nearly_passing_tests(self) -> None:
        tests = scored("tests", 45, target=50)
        lint = scored("lint", 8, target=10, higher_is_better=False)

        ranked = StrategySelector().rank(score_of(tests, lint))

        assert [m.name for m in ranked] == ["lint", "tests"]

    def test_higher_is_better_past_target_is_skipped(self) -> None:
        coverage = scored("coverage", 85, target=80)

        assert StrategySelector().rank(score_of(coverage)) == []


class TestSelectStrategy:
    """Tests for strategy selection with failure history."""

    def test_builtin_strategy_for_known_metric(self) -> None:
        strategy = StrategySelector().select_strategy(score_of(metric("tests", 80)), [])

        assert strategy.name == "fix-tests"
        assert strategy.focus == "tests"
        assert "test" in strategy.prompt.lower()

    def test_configured_strategy_wins(self) -> None:
        configured = StrategyConfig(name="narrow-types", focus="types", prompt="Add annotations.")
        selector = StrategySelector([configured])

        strategy = selector.select_strategy(score_of(metric("types", 40)), [])

        assert strategy.name == "narrow-types"
        assert strategy.prompt == "Add annotations."

    def test_generic_prompt_for_unknown_metric(self) -> None:
        strategy = builtin_strategy("bundle-size")
        assert strategy.focus == "bundle-size"
        assert strategy.prompt

    def test_exhausted_strategy_moves_to_next_metric(self) -> None:
        selector = StrategySelector(retry_ceiling=2)
        failed = [
            FailedAttempt(strategy="fix-tests", focus="tests", reason="no_improvement"),
            FailedAttempt(strategy="fix-tests", focus="tests", reason="no_improvement"),
        ]

        strategy = selector.select_strategy(
            score_of(metric("tests", 50), metric("lint", 90)),
            failed,
        )

        assert strategy.focus == "lint"

    def test_below_ceiling_is_retried(self) -> None:
        selector = StrategySelector(retry_ceiling=2)
        failed = [FailedAttempt(strategy="fix-tests", focus="tests", reason="no_improvement")]

        strategy = selector.select_strategy(score_of(metric("tests", 50)), failed)

        assert strategy.focus == "tests"

    def test_other_failure_reasons_do_not_count(self) -> None:
        selector = StrategySelector(retry_ceiling=1)
        failed = [FailedAttempt(strategy="fix-tests", focus="tests", reason="tests_failed")]

        strategy = selector.select_strategy(score_of(metric("tests", 50)), failed)

        assert strategy.focus == "tests"

    def test_no_viable_strategy(self) -> None:
        selector = StrategySelector(retry_ceiling=1)
        failed = [FailedAttempt(strategy="fix-tests", focus="tests", reason="no_improvement")]

        with pytest.raises(NoViableStrategyError):
            _ = selector.select_strategy(score_of(metric("tests", 50)), failed)

    def test_nothing_below_target(self) -> None:
        with pytest.raises(NoViableStrategyError):
            _ = StrategySelector().select_strategy(score_of(metric("tests", 100)), [])


class TestCountFailures:
    """Tests for counting failures of a strategy."""

    def test_counts_matching_focus(self) -> None:
        failed = [
            FailedAttempt(strategy="s", focus="tests", reason="no_improvement"),
            FailedAttempt(strategy="s", focus="lint", reason="no_improvement"),
            FailedAttempt(strategy="s", focus=None, reason="no_improvement"),
            FailedAttempt(strategy="other", focus="tests", reason="no_improvement"),
        ]

        assert count_failures(failed, "s", "tests") == 2
