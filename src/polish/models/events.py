# Copyright (c) Syntropy Systems
"""Event models emitted by the polish loop."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from .base import JSONObject, JSONValue, PolishBaseModel, utcnow

EventType = Literal[
    "init",
    "phase",
    "status",
    "score",
    "strategy",
    "agent",
    "commit",
    "rollback",
    "result",
    "error",
    "aborted",
    "worktree_created",
    "worktree_cleanup",
]

TERMINAL_EVENTS: frozenset[str] = frozenset({"result", "aborted"})


class PolishEvent(PolishBaseModel):
    """One entry of a session's event stream."""

    type: EventType
    data: JSONObject = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utcnow)


class AgentEvent(PolishBaseModel):
    """Tool lifecycle or text fragment surfaced by the fix agent."""

    kind: Literal["tool", "text"]
    phase: Optional[Literal["PreToolUse", "PostToolUse"]] = None
    tool: Optional[str] = None
    tool_use_id: Optional[str] = None
    input: Optional[JSONValue] = None
    output: Optional[JSONValue] = None
    message: Optional[str] = None
    is_error: bool = False

    def to_event(self) -> PolishEvent:
        """Wrap as an `agent` stream event."""
        return PolishEvent(
            type="agent",
            data=self.model_dump(mode="json", exclude_none=True),
        )
