# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

import json
from typing import Optional, cast

from pydantic import field_validator

from .base import JSONObject, PolishBaseModel


class SessionRecord(PolishBaseModel):
    """Database session record."""

    id: str
    status: str
    mission: Optional[str] = None
    project_path: str
    branch_name: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    initial_score: Optional[float] = None
    final_score: Optional[float] = None
    commits: int = 0
    iterations: int = 0
    stopped_reason: Optional[str] = None
    error_message: Optional[str] = None
    cancel_requested_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Whether the session is still pending or running."""
        return self.status in ("pending", "running")


class EventRecord(PolishBaseModel):
    """Database session event record."""

    id: int
    session_id: str
    type: str
    data: JSONObject
    timestamp: str

    @field_validator("data", mode="before")
    @classmethod
    def _parse_data(cls, value: object) -> JSONObject:
        if value is None:
            return {}
        if isinstance(value, str):
            return cast("JSONObject", json.loads(value))
        return cast("JSONObject", value)
