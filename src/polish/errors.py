# Copyright (c) Syntropy Systems
"""Exception hierarchy for polish."""
from __future__ import annotations

from typing import Optional


class PolishError(Exception):
    """Base class for polish errors."""


class ConfigError(PolishError):
    """Configuration is missing or invalid."""


class MetricRunError(PolishError):
    """A metric command could not produce a value.

    Recovered by the scorer: the metric scores 0 for that pass.
    """

    def __init__(self, metric: str, message: str) -> None:
        super().__init__(f"{metric}: {message}")
        self.metric = metric


class NoViableStrategyError(PolishError):
    """Every metric with headroom has exhausted its strategies."""


class AgentError(PolishError):
    """The fix agent failed outright."""


class ContinuationExhausted(AgentError):
    """The agent needed more turns than the continuation budget allows."""


class VcsError(PolishError):
    """A git operation failed. Session-fatal."""

    def __init__(
        self,
        message: str,
        command: Optional[list[str]] = None,
        stderr: str = "",
    ) -> None:
        detail = f"{message}: {stderr.strip()}" if stderr.strip() else message
        super().__init__(detail)
        self.command = command or []
        self.stderr = stderr
