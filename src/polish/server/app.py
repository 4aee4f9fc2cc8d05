"""FastAPI application for the polish server."""

import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from polish import __version__, db
from polish.config import get_db_path
from polish.errors import PolishError
from polish.server.manager import SessionManager
from polish.server.models import (
    AbortResponse,
    EventListResponse,
    EventResponse,
    HealthResponse,
    MessageResponse,
    SessionCreate,
    SessionCreated,
    SessionListResponse,
    SessionResponse,
)

logger = logging.getLogger(__name__)

STREAM_POLL_INTERVAL = 0.5
STREAM_KEEPALIVE_SECONDS = 15.0


def get_manager(request: Request) -> SessionManager:
    """Get the session manager of this application."""
    return request.app.state.manager


def get_conn(request: Request) -> Iterator[sqlite3.Connection]:
    """Open a database connection for the duration of a request."""
    conn = db.get_connection(request.app.state.db_path)
    try:
        yield conn
    finally:
        conn.close()


def _require_session(conn: sqlite3.Connection, session_id: str) -> dict:
    session = db.get_session(conn, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _session_response(session: dict) -> SessionResponse:
    return SessionResponse(
        **{k: v for k, v in session.items() if k != "cancel_requested_at"},
        abort_requested=session.get("cancel_requested_at") is not None,
    )


def _format_sse(event: dict) -> str:
    payload = json.dumps({"type": event["type"], "data": event["data"], "timestamp": event["timestamp"]})
    return f"id: {event['id']}\nevent: {event['type']}\ndata: {payload}\n\n"


def stream_events(
    db_path: Path,
    session_id: str,
    after_id: int = 0,
    poll_interval: float = STREAM_POLL_INTERVAL,
) -> Iterator[str]:
    """Replay a session's events after `after_id` and follow until it finishes."""
    conn = db.get_connection(db_path)
    try:
        last_id = after_id
        last_sent = time.monotonic()
        while True:
            session = db.get_session(conn, session_id)
            finished = session is None or session["status"] in db.FINAL_STATUSES

            # Events are all written before the status turns final
            for event in db.get_events(conn, session_id, after_id=last_id):
                yield _format_sse(event)
                last_id = event["id"]
                last_sent = time.monotonic()
            if finished:
                return

            if time.monotonic() - last_sent >= STREAM_KEEPALIVE_SECONDS:
                yield ": keepalive\n\n"
                last_sent = time.monotonic()
            time.sleep(poll_interval)
    finally:
        conn.close()


def create_app(
    polish_dir: Path,
    manager: Optional[SessionManager] = None,
    poll_interval: float = STREAM_POLL_INTERVAL,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        polish_dir: The project's .polish directory
        manager: Session manager to use (one is created when omitted)
        poll_interval: Seconds between database polls of an event stream

    Returns:
        Configured FastAPI application
    """
    db_path = get_db_path(polish_dir)
    db.init_db(db_path)
    session_manager = manager or SessionManager(polish_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.manager.shutdown()

    app = FastAPI(
        title="polish server",
        description="Closed-loop code quality sessions",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.polish_dir = polish_dir
    app.state.db_path = db_path
    app.state.manager = session_manager

    # --- Session Endpoints ---

    @app.get("/api/v1/sessions", response_model=SessionListResponse)
    def list_sessions(
        status: Optional[str] = Query(None, description="Filter: pending, running, completed, failed, aborted"),
        limit: int = Query(50, ge=1, le=500),
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        """List sessions, newest first."""
        sessions = db.get_sessions(conn, status=status, limit=limit)
        return SessionListResponse(sessions=[_session_response(s) for s in sessions])

    @app.post("/api/v1/sessions", response_model=SessionCreated, status_code=201)
    def create_session(
        request: SessionCreate,
        manager: SessionManager = Depends(get_manager),
    ):
        """Start a new session in the background."""
        try:
            session_id = manager.start(
                mission=request.mission,
                **request.model_dump(exclude={"mission"}, exclude_none=True),
            )
        except PolishError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return SessionCreated(session_id=session_id)

    @app.get("/api/v1/sessions/{session_id}", response_model=SessionResponse)
    def get_session(session_id: str, conn: sqlite3.Connection = Depends(get_conn)):
        """Get session details."""
        return _session_response(_require_session(conn, session_id))

    @app.delete("/api/v1/sessions/{session_id}", response_model=MessageResponse)
    def delete_session(session_id: str, conn: sqlite3.Connection = Depends(get_conn)):
        """Delete a finished session and its event log."""
        session = _require_session(conn, session_id)
        try:
            db.delete_session(conn, session["id"])
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return MessageResponse(message=f"Session {session['id']} deleted")

    @app.post("/api/v1/sessions/{session_id}/abort", response_model=AbortResponse)
    def abort_session(
        session_id: str,
        conn: sqlite3.Connection = Depends(get_conn),
        manager: SessionManager = Depends(get_manager),
    ):
        """Stop a pending or running session."""
        session = _require_session(conn, session_id)
        if session["status"] in db.FINAL_STATUSES:
            raise HTTPException(
                status_code=409,
                detail=f"Session {session['id']} is already {session['status']}",
            )
        old_status = manager.abort(session["id"])
        return AbortResponse(
            message=f"Abort requested for session {session['id']}",
            previous_status=old_status,
        )

    # --- Event Endpoints ---

    @app.get("/api/v1/sessions/{session_id}/events", response_model=EventListResponse)
    def list_events(
        session_id: str,
        after: int = Query(0, ge=0, description="Only events with a larger ID"),
        limit: Optional[int] = Query(None, ge=1, le=1000),
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        """Get a page of the session's event log."""
        session = _require_session(conn, session_id)
        events = db.get_events(conn, session["id"], after_id=after, limit=limit)
        return EventListResponse(
            session_id=session["id"],
            events=[EventResponse(**e) for e in events],
            last_id=events[-1]["id"] if events else after,
        )

    @app.get("/api/v1/sessions/{session_id}/stream")
    def stream_session(
        session_id: str,
        after: int = Query(0, ge=0),
        last_event_id: Optional[str] = Header(None),
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        """Server-sent events for a session, replayed then followed live."""
        session = _require_session(conn, session_id)
        after_id = after
        if last_event_id:
            try:
                after_id = int(last_event_id)
            except ValueError as e:
                raise HTTPException(status_code=400, detail="Last-Event-ID must be an integer") from e

        return StreamingResponse(
            stream_events(app.state.db_path, session["id"], after_id, poll_interval),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # --- Status Endpoints ---

    @app.get("/api/v1/health", response_model=HealthResponse)
    def health_check():
        """Health check endpoint."""
        return HealthResponse(version=__version__)

    return app
