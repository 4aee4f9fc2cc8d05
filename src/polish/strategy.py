# Copyright (c) Syntropy Systems
"""Pick the worst metric and a strategy the agent has not exhausted yet."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from polish.errors import NoViableStrategyError
from polish.models import FailedAttempt, MetricResult, ScoreResult, Strategy, StrategyConfig

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

DEFAULT_RETRY_CEILING = 2

_TESTS_PROMPT = """\
Fix failing tests or add missing tests to improve the score.

Focus on:
1. Read the failing test output to understand what's broken
2. Find and fix the root cause in the implementation
3. Make minimal, targeted changes
4. Do NOT delete or skip tests"""

_TYPES_PROMPT = """\
Fix type-checking errors to improve the score.

Focus on:
1. Read the error messages carefully
2. Fix type errors with proper types rather than blanket casts or ignores
3. Make minimal changes to fix each error"""

_LINT_PROMPT = """\
Fix lint errors to improve the score.

Focus on:
1. Fix each error according to the rule
2. Do NOT disable rules unless absolutely necessary
3. Make minimal, targeted changes"""

_COVERAGE_PROMPT = """\
Add tests to improve coverage.

Focus on:
1. Identify uncovered code paths
2. Add meaningful tests (not just coverage padding)
3. Test edge cases and error paths"""

_BUILTIN_PROMPTS = {
    "tests": _TESTS_PROMPT,
    "test": _TESTS_PROMPT,
    "types": _TYPES_PROMPT,
    "typecheck": _TYPES_PROMPT,
    "typescript": _TYPES_PROMPT,
    "tsc": _TYPES_PROMPT,
    "mypy": _TYPES_PROMPT,
    "lint": _LINT_PROMPT,
    "eslint": _LINT_PROMPT,
    "ruff": _LINT_PROMPT,
    "coverage": _COVERAGE_PROMPT,
}


def builtin_strategy(metric_name: str) -> StrategyConfig:
    """Strategy used for a metric with no configured strategies."""
    prompt = _BUILTIN_PROMPTS.get(metric_name.lower())
    if prompt is None:
        prompt = (
            f'Improve the metric "{metric_name}" by making an appropriate code change.\n\n'
            "Make minimal, targeted changes to improve the score."
        )
    return StrategyConfig(name=f"fix-{metric_name}", focus=metric_name, prompt=prompt)


def count_failures(
    failed_attempts: Sequence[FailedAttempt],
    strategy: str,
    focus: str,
) -> int:
    """Number of no-improvement failures for a strategy on a metric."""
    return sum(
        1
        for attempt in failed_attempts
        if attempt.strategy == strategy
        and attempt.reason == "no_improvement"
        and (attempt.focus is None or attempt.focus == focus)
    )


class StrategySelector:
    """Selects the next strategy from a score and the session's failures."""

    def __init__(
        self,
        strategies: Sequence[StrategyConfig] = (),
        retry_ceiling: int = DEFAULT_RETRY_CEILING,
    ) -> None:
        self.strategies = list(strategies)
        self.retry_ceiling = retry_ceiling

    def strategies_for(self, metric_name: str) -> list[StrategyConfig]:
        configured = [s for s in self.strategies if s.focus == metric_name]
        return configured or [builtin_strategy(metric_name)]

    def is_exhausted(
        self,
        strategy: StrategyConfig,
        failed_attempts: Sequence[FailedAttempt],
    ) -> bool:
        return count_failures(failed_attempts, strategy.name, strategy.focus) >= self.retry_ceiling

    def rank(self, score: ScoreResult) -> list[MetricResult]:
        """Metrics with headroom, worst weighted distance first.

        Python's sort is stable, so ties keep configuration order.
        """
        candidates = [m for m in score.metrics if m.weighted_distance > 0]
        return sorted(candidates, key=lambda m: m.weighted_distance, reverse=True)

    def select_strategy(
        self,
        score: ScoreResult,
        failed_attempts: Sequence[FailedAttempt],
    ) -> Strategy:
        for metric in self.rank(score):
            for strategy in self.strategies_for(metric.name):
                if self.is_exhausted(strategy, failed_attempts):
                    logger.debug("Strategy %s exhausted for %s", strategy.name, metric.name)
                    continue
                return Strategy(name=strategy.name, focus=metric.name, prompt=strategy.prompt)

        msg = "Every metric with headroom has exhausted its strategies"
        raise NoViableStrategyError(msg)
