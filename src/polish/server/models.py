"""Pydantic models for the polish server API."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

# --- Session Models ---


class SessionCreate(BaseModel):
    """Request to start a new polish session."""

    mission: Optional[str] = Field(None, description="Feature to implement before polishing")
    target: Optional[float] = Field(None, ge=0, le=100, description="Score at which to stop")
    max_iterations: Optional[int] = Field(None, ge=1, description="Maximum fix attempts")
    max_duration: Optional[int] = Field(None, ge=1, description="Wall-clock budget in milliseconds")
    plateau_detection: Optional[Literal["stalled", "llm"]] = Field(None, description="Plateau mode")
    model: Optional[str] = Field(None, description="Model used by the fix agent")
    push: Optional[bool] = Field(None, description="Push the session branch")
    create_pr: Optional[bool] = Field(None, description="Open a GitHub pull request")


class SessionResponse(BaseModel):
    """Session information response."""

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
    abort_requested: bool = False


class SessionListResponse(BaseModel):
    """List of sessions, newest first."""

    sessions: list[SessionResponse]


class SessionCreated(BaseModel):
    """Response from starting a session."""

    session_id: str
    status: str = "pending"


# --- Event Models ---


class EventResponse(BaseModel):
    """One entry of a session event log."""

    id: int
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class EventListResponse(BaseModel):
    """A page of session events in append order."""

    session_id: str
    events: list[EventResponse]
    last_id: int = Field(0, description="Pass as `after` to fetch the next page")


# --- Generic Response Models ---


class AbortResponse(BaseModel):
    """Response from an abort request."""

    message: str
    previous_status: str


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
    success: bool = True


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
