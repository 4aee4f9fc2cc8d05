# Copyright (c) Syntropy Systems
"""Tests for running recorded sessions."""

import sqlite3
import threading
from pathlib import Path

import pytest

from fakes import FileMetricRunner, ScriptedCapability, Turn, set_score
from polish.agent import FixAgentInvoker
from polish.config import load_config
from polish.db import create_session, get_events, get_session, request_abort, start_session
from polish.errors import PolishError
from polish.metrics import MetricScorer
from polish.session import AbortWatcher, create_session_record, run_session, session_status_for


def scripted_agent(*turns: Turn) -> FixAgentInvoker:
    return FixAgentInvoker(ScriptedCapability(list(turns)), change_probe=lambda path: True)


class TestRunSession:
    """Tests for run_session."""

    def test_records_completed_session(self, polish_project: Path, db_connection: sqlite3.Connection) -> None:
        polish_dir = polish_project / ".polish"
        started: list[str] = []

        result = run_session(
            polish_dir,
            load_config(polish_dir),
            session_id="sess0001",
            scorer=MetricScorer(FileMetricRunner()),
            agent=scripted_agent(Turn(set_score(100))),
            on_start=lambda controller, bus: started.append(controller.session_id),
        )

        assert result.reason == "target_reached"
        assert started == ["sess0001"]

        session = get_session(db_connection, "sess0001")
        assert session is not None
        assert session["status"] == "completed"
        assert session["stopped_reason"] == "target_reached"
        assert session["initial_score"] == pytest.approx(80.0)
        assert session["final_score"] == pytest.approx(100.0)
        assert session["commits"] == 1
        assert session["iterations"] == 1
        assert session["branch_name"] == "polish/session-sess0001"

        types = [e["type"] for e in get_events(db_connection, "sess0001")]
        assert types[0] == "worktree_created"
        assert "result" in types

    def test_uses_existing_pending_record(self, polish_project: Path, db_connection: sqlite3.Connection) -> None:
        polish_dir = polish_project / ".polish"
        session_id = create_session_record(polish_dir, mission=None)

        result = run_session(
            polish_dir,
            load_config(polish_dir).with_overrides(target=80.0),
            session_id=session_id,
            scorer=MetricScorer(FileMetricRunner()),
            agent=scripted_agent(),
        )

        assert result.reason == "target_reached"
        session = get_session(db_connection, session_id)
        assert session is not None
        assert session["status"] == "completed"
        assert session["branch_name"] is None

    def test_refuses_finished_session(self, polish_project: Path, db_connection: sqlite3.Connection) -> None:
        polish_dir = polish_project / ".polish"
        create_session(db_connection, "gone0001", str(polish_project))
        _ = request_abort(db_connection, "gone0001")

        with pytest.raises(PolishError, match="already aborted"):
            _ = run_session(polish_dir, load_config(polish_dir), session_id="gone0001")

    def test_unexpected_failure_marks_session_failed(
        self, polish_project: Path, db_connection: sqlite3.Connection
    ) -> None:
        polish_dir = polish_project / ".polish"

        def explode(controller: object, bus: object) -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            _ = run_session(
                polish_dir,
                load_config(polish_dir),
                session_id="boom0001",
                scorer=MetricScorer(FileMetricRunner()),
                agent=scripted_agent(),
                on_start=explode,
            )

        session = get_session(db_connection, "boom0001")
        assert session is not None
        assert session["status"] == "failed"
        assert session["error_message"] == "boom"


class TestAbortWatcher:
    """Tests for abort polling."""

    def test_abort_request_triggers_callback(self, polish_project: Path, db_connection: sqlite3.Connection) -> None:
        create_session(db_connection, "watch001", str(polish_project))
        start_session(db_connection, "watch001")
        aborted = threading.Event()

        watcher = AbortWatcher(
            polish_project / ".polish" / "polish.db",
            "watch001",
            aborted.set,
            interval=0.05,
        )
        watcher.start()
        try:
            assert not aborted.wait(timeout=0.2)
            _ = request_abort(db_connection, "watch001")
            assert aborted.wait(timeout=2.0)
        finally:
            watcher.stop()


@pytest.mark.parametrize(
    ("reason", "status"),
    [
        ("target_reached", "completed"),
        ("plateau", "completed"),
        ("max_iterations", "completed"),
        ("timeout", "completed"),
        ("error", "failed"),
        ("aborted", "aborted"),
        ("user_stopped", "aborted"),
    ],
)
def test_session_status_for(reason: str, status: str) -> None:
    assert session_status_for(reason) == status  # type: ignore[arg-type]
