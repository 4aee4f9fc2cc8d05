"""SQLite database layer with WAL mode for sessions and their event logs."""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from polish.models.base import utcnow

# SQL schema for polish database
SCHEMA = """
-- Sessions table (one polish loop per row)
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    status TEXT DEFAULT 'pending',  -- pending, running, completed, failed, aborted
    mission TEXT,
    project_path TEXT NOT NULL,
    branch_name TEXT,

    -- Timestamps
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    started_at TEXT,
    finished_at TEXT,
    duration_seconds REAL,

    -- Outcome
    initial_score REAL,
    final_score REAL,
    commits INTEGER DEFAULT 0,
    iterations INTEGER DEFAULT 0,
    stopped_reason TEXT,
    error_message TEXT,

    -- Abort
    cancel_requested_at TEXT
);

-- Append-only event log per session
CREATE TABLE IF NOT EXISTS session_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    data TEXT,  -- JSON
    timestamp TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
CREATE INDEX IF NOT EXISTS idx_session_events_session ON session_events(session_id, id);
"""

ACTIVE_STATUSES = ("pending", "running")
FINAL_STATUSES = ("completed", "failed", "aborted")


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(
        str(db_path), timeout=5.0, isolation_level=None, check_same_thread=False
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


# --- Session Operations ---

def create_session(
    conn: sqlite3.Connection,
    session_id: str,
    project_path: str,
    mission: Optional[str] = None,
) -> None:
    """Create a new pending session record."""
    conn.execute(
        """
        INSERT INTO sessions (id, status, mission, project_path)
        VALUES (?, 'pending', ?, ?)
        """,
        (session_id, mission, project_path),
    )


def start_session(
    conn: sqlite3.Connection,
    session_id: str,
    branch_name: Optional[str] = None,
) -> None:
    """Mark a session as running."""
    conn.execute(
        """
        UPDATE sessions
        SET status = 'running', started_at = ?, branch_name = COALESCE(?, branch_name)
        WHERE id = ?
        """,
        (utcnow(), branch_name, session_id),
    )


def complete_session(
    conn: sqlite3.Connection,
    session_id: str,
    status: str,
    stopped_reason: Optional[str] = None,
    initial_score: Optional[float] = None,
    final_score: Optional[float] = None,
    commits: int = 0,
    iterations: int = 0,
    branch_name: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    """Record the outcome of a finished session."""
    if status not in FINAL_STATUSES:
        raise ValueError(f"Invalid final status: {status}")

    row = conn.execute(
        "SELECT started_at FROM sessions WHERE id = ?",
        (session_id,),
    ).fetchone()

    now = utcnow()
    duration = None

    if row and row["started_at"]:
        started = datetime.fromisoformat(row["started_at"].replace("Z", "+00:00"))
        finished = datetime.fromisoformat(now.replace("Z", "+00:00"))
        duration = (finished - started).total_seconds()

    conn.execute(
        """
        UPDATE sessions
        SET status = ?, finished_at = ?, duration_seconds = ?, stopped_reason = ?,
            initial_score = ?, final_score = ?, commits = ?, iterations = ?,
            branch_name = COALESCE(?, branch_name), error_message = ?
        WHERE id = ?
        """,
        (
            status,
            now,
            duration,
            stopped_reason,
            initial_score,
            final_score,
            commits,
            iterations,
            branch_name,
            error_message,
            session_id,
        ),
    )


def get_session(conn: sqlite3.Connection, session_id: str) -> Optional[dict]:
    """Get a session by ID, or by a unique ID prefix."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE id = ?",
        (session_id,),
    ).fetchone()

    if row is None:
        rows = conn.execute(
            "SELECT * FROM sessions WHERE id LIKE ? LIMIT 2",
            (f"{session_id}%",),
        ).fetchall()
        if len(rows) != 1:
            return None
        row = rows[0]

    return dict(row)


def get_sessions(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[dict]:
    """Get sessions with optional filtering, newest first."""
    query = "SELECT * FROM sessions WHERE 1=1"
    params: list[Any] = []

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [dict(row) for row in rows]


def delete_session(conn: sqlite3.Connection, session_id: str) -> bool:
    """Delete a finished session and its events. Returns True if deleted."""
    row = conn.execute(
        "SELECT status FROM sessions WHERE id = ?",
        (session_id,),
    ).fetchone()

    if row is None:
        return False
    if row["status"] in ACTIVE_STATUSES:
        raise ValueError(f"Cannot delete session {session_id} while it is {row['status']}")

    conn.execute("DELETE FROM session_events WHERE session_id = ?", (session_id,))
    conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    return True


def request_abort(conn: sqlite3.Connection, session_id: str) -> str:
    """
    Request that a session stop. Returns the previous status.

    - If pending: marks as aborted immediately
    - If running: sets cancel_requested_at (the controller will wind down)
    """
    row = conn.execute(
        "SELECT status FROM sessions WHERE id = ?",
        (session_id,),
    ).fetchone()

    if row is None:
        raise ValueError(f"Session {session_id} not found")

    old_status = row["status"]
    now = utcnow()

    if old_status == "pending":
        conn.execute(
            """
            UPDATE sessions
            SET status = 'aborted', finished_at = ?, stopped_reason = 'aborted',
                cancel_requested_at = ?
            WHERE id = ?
            """,
            (now, now, session_id),
        )
    elif old_status == "running":
        conn.execute(
            "UPDATE sessions SET cancel_requested_at = ? WHERE id = ?",
            (now, session_id),
        )

    return old_status


def get_abort_requested(conn: sqlite3.Connection, session_id: str) -> Optional[str]:
    """Return cancel_requested_at if an abort was requested, None otherwise."""
    row = conn.execute(
        "SELECT cancel_requested_at FROM sessions WHERE id = ?",
        (session_id,),
    ).fetchone()
    return row["cancel_requested_at"] if row else None


# --- Event Operations ---

def add_event(
    conn: sqlite3.Connection,
    session_id: str,
    event_type: str,
    data: Optional[dict] = None,
    timestamp: Optional[str] = None,
) -> int:
    """Append an event to a session's log and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO session_events (session_id, type, data, timestamp)
        VALUES (?, ?, ?, ?)
        """,
        (session_id, event_type, json.dumps(data or {}), timestamp or utcnow()),
    )
    return cursor.lastrowid


def _deserialize_event(row: sqlite3.Row) -> dict:
    """Deserialize an event row, converting the JSON payload back."""
    event = dict(row)
    event["data"] = json.loads(event["data"]) if event.get("data") else {}
    return event


def get_events(
    conn: sqlite3.Connection,
    session_id: str,
    after_id: int = 0,
    limit: Optional[int] = None,
) -> list[dict]:
    """Get events of a session in append order, after a given event ID."""
    query = "SELECT * FROM session_events WHERE session_id = ? AND id > ? ORDER BY id"
    params: list[Any] = [session_id, after_id]

    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [_deserialize_event(row) for row in rows]


def get_latest_events(
    conn: sqlite3.Connection,
    session_id: str,
    limit: int = 20,
) -> list[dict]:
    """Get the last `limit` events of a session, oldest first."""
    rows = conn.execute(
        """
        SELECT * FROM session_events
        WHERE session_id = ?
        ORDER BY id DESC
        LIMIT ?
        """,
        (session_id, limit),
    ).fetchall()
    return [_deserialize_event(row) for row in reversed(rows)]
