# Copyright (c) Syntropy Systems
"""Pydantic models for polish."""

from .base import JSONObject, JSONValue, PolishBaseModel, utcnow
from .db import EventRecord, SessionRecord
from .events import TERMINAL_EVENTS, AgentEvent, EventType, PolishEvent
from .score import (
    CommitInfo,
    FailedAttempt,
    FailureReason,
    Metric,
    MetricResult,
    PolishResult,
    ScoreResult,
    StopReason,
    Strategy,
    StrategyConfig,
)
from .state import PolishState

__all__ = [
    "TERMINAL_EVENTS",
    "AgentEvent",
    "CommitInfo",
    "EventRecord",
    "EventType",
    "FailedAttempt",
    "FailureReason",
    "JSONObject",
    "JSONValue",
    "Metric",
    "MetricResult",
    "PolishBaseModel",
    "PolishEvent",
    "PolishResult",
    "PolishState",
    "ScoreResult",
    "SessionRecord",
    "StopReason",
    "Strategy",
    "StrategyConfig",
    "utcnow",
]
