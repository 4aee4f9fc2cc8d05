# Copyright (c) Syntropy Systems
"""Metric scoring: run metric commands, normalize, aggregate."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

from polish.errors import MetricRunError
from polish.models import Metric, MetricResult, ScoreResult
from polish.runner import run_command, shell_argv

if TYPE_CHECKING:
    from collections.abc import Sequence
    from threading import Event

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?")

# Output kept on a MetricResult for prompts and hook feedback
OUTPUT_TAIL_CHARS = 2000


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def normalize(raw: float, target: float, higher_is_better: bool) -> float:
    """Map a raw metric value onto 0-100."""
    if target == 0:
        return 100.0 if raw == 0 else 0.0
    ratio = raw / target * 100
    if higher_is_better:
        return clamp(ratio)
    return clamp(100 - ratio)


def aggregate(results: Sequence[MetricResult]) -> float:
    """Weighted mean of normalized scores."""
    total_weight = sum(r.weight for r in results)
    if total_weight <= 0:
        return 0.0
    weighted = sum(r.normalized_score * r.weight for r in results)
    return clamp(weighted / total_weight)


def parse_metric_output(output: str) -> Optional[float]:
    """Extract a number from command output.

    The whole trimmed output if it is a number, else the last number found.
    """
    text = output.strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass
    matches = _NUMBER_RE.findall(text)
    if not matches:
        return None
    return float(matches[-1])


@dataclass
class MetricReading:
    """Raw value produced by a metric command."""

    value: float
    output: str = ""
    exit_code: int = 0


class MetricRunner(Protocol):
    """Produces a raw value for a metric in a working directory."""

    def run(self, metric: Metric, workdir: Path) -> MetricReading: ...


class ShellMetricRunner:
    """Runs metric commands through /bin/sh in their own process group."""

    def __init__(
        self,
        timeout: float = 300.0,
        grace_period: float = 10.0,
        cancel_event: Optional[Event] = None,
    ) -> None:
        self.timeout = timeout
        self.grace_period = grace_period
        self.cancel_event = cancel_event

    def run(self, metric: Metric, workdir: Path) -> MetricReading:
        logger.debug("Running metric %s: %s", metric.name, metric.command)
        try:
            result = run_command(
                shell_argv(metric.command),
                workdir=workdir,
                timeout=self.timeout,
                cancel_event=self.cancel_event,
                grace_period=self.grace_period,
            )
        except OSError as e:
            raise MetricRunError(metric.name, f"could not start command: {e}") from e

        if result.cancelled:
            raise MetricRunError(metric.name, "cancelled")
        if result.timed_out:
            raise MetricRunError(metric.name, f"timed out after {self.timeout:g}s")

        value = parse_metric_output(result.output)
        if value is None:
            raise MetricRunError(
                metric.name,
                f"no numeric output (exit code {result.exit_code})",
            )
        # Counters such as lint often exit non-zero while still printing a value
        return MetricReading(value=value, output=result.output, exit_code=result.exit_code)


class MetricScorer:
    """Scores a working tree against a list of metrics."""

    def __init__(self, runner: Optional[MetricRunner] = None) -> None:
        self.runner = runner if runner is not None else ShellMetricRunner()

    def score_metric(self, metric: Metric, workdir: Path) -> MetricResult:
        try:
            reading = self.runner.run(metric, workdir)
        except MetricRunError as e:
            logger.warning("Metric %s failed: %s", metric.name, e)
            return MetricResult(
                name=metric.name,
                raw_value=None,
                normalized_score=0.0,
                weight=metric.weight,
                target=metric.target,
                higher_is_better=metric.higher_is_better,
                error=str(e),
            )

        return MetricResult(
            name=metric.name,
            raw_value=reading.value,
            normalized_score=normalize(reading.value, metric.target, metric.higher_is_better),
            weight=metric.weight,
            target=metric.target,
            higher_is_better=metric.higher_is_better,
            output=reading.output[-OUTPUT_TAIL_CHARS:] or None,
        )

    def score(self, metrics: Sequence[Metric], workdir: Path) -> ScoreResult:
        """Run every metric sequentially, in configuration order."""
        results = [self.score_metric(metric, workdir) for metric in metrics]
        total = aggregate(results)
        logger.info("Scored %.1f across %d metrics", total, len(results))
        return ScoreResult(score=total, metrics=results)
