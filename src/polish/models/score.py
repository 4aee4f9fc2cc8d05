# Copyright (c) Syntropy Systems
"""Pydantic models for metrics, scores, strategies and loop outcomes."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from .base import FrozenModel, PolishBaseModel, utcnow

FailureReason = Literal["tests_failed", "no_improvement", "error"]

StopReason = Literal[
    "target_reached",
    "plateau",
    "max_iterations",
    "timeout",
    "error",
    "user_stopped",
    "aborted",
]


class Metric(FrozenModel):
    """A named, weighted quality signal computed by an external command."""

    name: str = Field(min_length=1)
    command: str = Field(min_length=1)
    weight: float = Field(gt=0)
    target: float = Field(ge=0, le=100)
    higher_is_better: bool = Field(default=True, alias="higherIsBetter")


class MetricResult(PolishBaseModel):
    """One scoring observation for a metric."""

    name: str
    raw_value: Optional[float] = None
    normalized_score: float = Field(ge=0, le=100)
    weight: float
    target: float
    higher_is_better: bool = True
    error: Optional[str] = None
    output: Optional[str] = None

    @property
    def weighted_distance(self) -> float:
        """Headroom on the normalized scale, scaled by weight.

        `target` is on the raw scale, so it is already folded into
        `normalized_score`: a metric has headroom until it scores 100.
        """
        return max(0.0, 100.0 - self.normalized_score) * self.weight


class ScoreResult(PolishBaseModel):
    """Weighted aggregate of one scoring pass."""

    score: float = Field(ge=0, le=100)
    metrics: list[MetricResult] = Field(default_factory=list)

    def get(self, name: str) -> Optional[MetricResult]:
        """Return the result for a metric by name."""
        for metric in self.metrics:
            if metric.name == name:
                return metric
        return None


class StrategyConfig(FrozenModel):
    """A strategy declared in configuration."""

    name: str = Field(min_length=1)
    focus: str = Field(min_length=1)
    prompt: str = Field(min_length=1)


class Strategy(PolishBaseModel):
    """Instruction for the fix agent, generated for one iteration."""

    name: str
    focus: str
    prompt: str


class FailedAttempt(PolishBaseModel):
    """A strategy attempt that was rolled back."""

    strategy: str
    focus: Optional[str] = None
    file: Optional[str] = None
    line: Optional[int] = None
    reason: FailureReason
    timestamp: str = Field(default_factory=utcnow)


class CommitInfo(PolishBaseModel):
    """An accepted iteration."""

    hash: str
    message: str
    score_delta: float
    timestamp: str = Field(default_factory=utcnow)


class PolishResult(PolishBaseModel):
    """Summary of a finished polish session."""

    initial_score: Optional[ScoreResult] = None
    final_score: Optional[ScoreResult] = None
    iterations: int = 0
    commits: list[CommitInfo] = Field(default_factory=list)
    reason: StopReason
    branch_name: Optional[str] = None
    scores: list[float] = Field(default_factory=list)
    duration_seconds: float = 0.0
    pr_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """Target reached, or the session ended without regressing."""
        if self.reason == "target_reached":
            return True
        if self.reason in ("error", "aborted", "user_stopped"):
            return False
        if self.initial_score is None or self.final_score is None:
            return False
        return self.final_score.score >= self.initial_score.score
