# Copyright (c) Syntropy Systems
"""Session-scoped loop state."""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from .base import PolishBaseModel, utcnow


class PolishState(PolishBaseModel):
    """Iteration and stall bookkeeping owned by the controller."""

    iteration: int = 0
    scores: list[float] = Field(default_factory=list)
    last_improvement: int = 0
    stalled_count: int = 0
    best_score: Optional[float] = None
    worktree_path: Optional[str] = None
    started_at: str = Field(default_factory=utcnow)
    last_updated: str = Field(default_factory=utcnow)
