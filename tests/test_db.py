# Copyright (c) Syntropy Systems
"""Tests for polish database operations."""

import sqlite3

import pytest

from polish.db import (
    add_event,
    complete_session,
    create_session,
    delete_session,
    get_abort_requested,
    get_events,
    get_latest_events,
    get_session,
    get_sessions,
    request_abort,
    start_session,
)


class TestSessionOperations:
    """Tests for session CRUD operations."""

    def test_create_session(self, db_connection: sqlite3.Connection) -> None:
        """Test creating a session."""
        create_session(db_connection, "abc12345", "/tmp/project", mission="Add search")

        session = get_session(db_connection, "abc12345")
        assert session is not None
        assert session["status"] == "pending"
        assert session["mission"] == "Add search"
        assert session["project_path"] == "/tmp/project"
        assert session["created_at"] is not None

    def test_get_session_by_prefix(self, db_connection: sqlite3.Connection) -> None:
        """Test resolving a unique ID prefix."""
        create_session(db_connection, "abc12345", "/tmp/project")
        create_session(db_connection, "abd99999", "/tmp/project")

        session = get_session(db_connection, "abc")
        assert session is not None
        assert session["id"] == "abc12345"

        # Ambiguous prefix
        assert get_session(db_connection, "ab") is None
        assert get_session(db_connection, "zzz") is None

    def test_session_lifecycle(self, db_connection: sqlite3.Connection) -> None:
        """Test pending -> running -> completed."""
        create_session(db_connection, "life0001", "/tmp/project")
        start_session(db_connection, "life0001", branch_name="polish/session-life0001")

        session = get_session(db_connection, "life0001")
        assert session is not None
        assert session["status"] == "running"
        assert session["started_at"] is not None

        complete_session(
            db_connection,
            "life0001",
            status="completed",
            stopped_reason="target_reached",
            initial_score=80.0,
            final_score=96.0,
            commits=2,
            iterations=3,
        )

        session = get_session(db_connection, "life0001")
        assert session is not None
        assert session["status"] == "completed"
        assert session["stopped_reason"] == "target_reached"
        assert session["final_score"] == 96.0
        assert session["commits"] == 2
        assert session["branch_name"] == "polish/session-life0001"
        assert session["duration_seconds"] is not None

    def test_complete_rejects_active_status(self, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "bad00001", "/tmp/project")
        with pytest.raises(ValueError, match="Invalid final status"):
            complete_session(db_connection, "bad00001", status="running")

    def test_get_sessions_filters_by_status(self, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "first001", "/tmp/project")
        create_session(db_connection, "second01", "/tmp/project")
        start_session(db_connection, "second01")

        all_sessions = get_sessions(db_connection)
        assert [s["id"] for s in all_sessions] == ["second01", "first001"]

        running = get_sessions(db_connection, status="running")
        assert [s["id"] for s in running] == ["second01"]

        assert len(get_sessions(db_connection, limit=1)) == 1

    def test_delete_finished_session(self, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "done0001", "/tmp/project")
        _ = add_event(db_connection, "done0001", "status", {"message": "hi"})
        complete_session(db_connection, "done0001", status="failed", stopped_reason="error")

        assert delete_session(db_connection, "done0001")
        assert get_session(db_connection, "done0001") is None
        assert get_events(db_connection, "done0001") == []

    def test_delete_active_session_refused(self, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "busy0001", "/tmp/project")
        with pytest.raises(ValueError, match="pending"):
            _ = delete_session(db_connection, "busy0001")

    def test_delete_missing_session(self, db_connection: sqlite3.Connection) -> None:
        assert not delete_session(db_connection, "missing1")


class TestAbort:
    """Tests for abort requests."""

    def test_abort_pending_session(self, db_connection: sqlite3.Connection) -> None:
        """A pending session is aborted immediately."""
        create_session(db_connection, "pend0001", "/tmp/project")

        previous = request_abort(db_connection, "pend0001")

        assert previous == "pending"
        session = get_session(db_connection, "pend0001")
        assert session is not None
        assert session["status"] == "aborted"
        assert session["stopped_reason"] == "aborted"

    def test_abort_running_session(self, db_connection: sqlite3.Connection) -> None:
        """A running session only gets the flag; the controller winds down."""
        create_session(db_connection, "run00001", "/tmp/project")
        start_session(db_connection, "run00001")
        assert get_abort_requested(db_connection, "run00001") is None

        previous = request_abort(db_connection, "run00001")

        assert previous == "running"
        session = get_session(db_connection, "run00001")
        assert session is not None
        assert session["status"] == "running"
        assert get_abort_requested(db_connection, "run00001") is not None

    def test_abort_missing_session(self, db_connection: sqlite3.Connection) -> None:
        with pytest.raises(ValueError, match="not found"):
            _ = request_abort(db_connection, "missing1")


class TestEventOperations:
    """Tests for the append-only event log."""

    def test_events_in_append_order(self, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "evt00001", "/tmp/project")
        ids = [
            add_event(db_connection, "evt00001", "score", {"score": float(i)})
            for i in range(5)
        ]

        assert ids == sorted(ids)
        events = get_events(db_connection, "evt00001")
        assert [e["data"]["score"] for e in events] == [0.0, 1.0, 2.0, 3.0, 4.0]
        assert events[0]["type"] == "score"

    def test_events_after_id_and_limit(self, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "evt00002", "/tmp/project")
        ids = [add_event(db_connection, "evt00002", "status", {"n": i}) for i in range(5)]

        after = get_events(db_connection, "evt00002", after_id=ids[1])
        assert [e["id"] for e in after] == ids[2:]

        limited = get_events(db_connection, "evt00002", after_id=ids[0], limit=2)
        assert [e["id"] for e in limited] == ids[1:3]

    def test_events_are_per_session(self, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "evt00003", "/tmp/project")
        create_session(db_connection, "evt00004", "/tmp/project")
        _ = add_event(db_connection, "evt00003", "status")
        _ = add_event(db_connection, "evt00004", "status")

        assert len(get_events(db_connection, "evt00003")) == 1

    def test_latest_events(self, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "evt00005", "/tmp/project")
        for i in range(10):
            _ = add_event(db_connection, "evt00005", "status", {"n": i})

        latest = get_latest_events(db_connection, "evt00005", limit=3)
        assert [e["data"]["n"] for e in latest] == [7, 8, 9]
