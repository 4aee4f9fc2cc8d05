# Copyright (c) Syntropy Systems
"""Wire a controller from configuration and run it as a recorded session."""
from __future__ import annotations

import logging
import random
import string
from pathlib import Path
from threading import Event, Thread
from typing import TYPE_CHECKING, Callable, Optional

from polish import db
from polish.config import get_db_path, get_project_root, get_state_dir, validate_config
from polish.controller import PolishController
from polish.errors import PolishError
from polish.events import SessionEventBus
from polish.plateau import make_plateau_detector
from polish.vcs import GitWorkspaceManager

if TYPE_CHECKING:
    from polish.agent import FixAgentInvoker
    from polish.config import PolishConfig
    from polish.metrics import MetricScorer
    from polish.models import PolishResult, StopReason
    from polish.plateau import LlmJudge

logger = logging.getLogger(__name__)

ABORT_POLL_INTERVAL = 1.0


def generate_session_id() -> str:
    """Generate a short random session ID."""
    chars = string.ascii_lowercase + string.digits
    return "".join(random.choices(chars, k=8))


def session_status_for(reason: StopReason) -> str:
    """Database status for a terminal reason."""
    if reason in ("aborted", "user_stopped"):
        return "aborted"
    if reason == "error":
        return "failed"
    return "completed"


class AbortWatcher:
    """Polls the session row and aborts the controller when asked to."""

    def __init__(
        self,
        db_path: Path,
        session_id: str,
        on_abort: Callable[[], None],
        interval: float = ABORT_POLL_INTERVAL,
    ) -> None:
        self.db_path = db_path
        self.session_id = session_id
        self.on_abort = on_abort
        self.interval = interval
        self._stop = Event()
        self._thread = Thread(target=self._watch, name=f"polish-abort-{session_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=self.interval * 2)

    def _watch(self) -> None:
        while not self._stop.is_set():
            try:
                conn = db.get_connection(self.db_path)
                try:
                    requested = db.get_abort_requested(conn, self.session_id)
                finally:
                    conn.close()
            except Exception as e:  # noqa: BLE001
                logger.warning("Abort check failed for %s: %s", self.session_id, e)
                requested = None
            if requested:
                self.on_abort()
                return
            self._stop.wait(timeout=self.interval)


def create_session_record(
    polish_dir: Path,
    mission: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Insert a pending session row and return its ID."""
    db_path = get_db_path(polish_dir)
    db.init_db(db_path)
    session_id = session_id or generate_session_id()
    conn = db.get_connection(db_path)
    try:
        db.create_session(conn, session_id, str(get_project_root(polish_dir)), mission)
    finally:
        conn.close()
    return session_id


def run_session(
    polish_dir: Path,
    config: PolishConfig,
    *,
    session_id: Optional[str] = None,
    mission: Optional[str] = None,
    scorer: Optional[MetricScorer] = None,
    agent: Optional[FixAgentInvoker] = None,
    judge: Optional[LlmJudge] = None,
    on_start: Optional[Callable[[PolishController, SessionEventBus], None]] = None,
) -> PolishResult:
    """Run one polish session against the project owning `polish_dir`.

    The session row is created when `session_id` is not given. `on_start`
    runs before the loop, e.g. to subscribe to the event bus.
    """
    validate_config(config)

    db_path = get_db_path(polish_dir)
    db.init_db(db_path)
    project_path = get_project_root(polish_dir)

    conn = db.get_connection(db_path)
    try:
        existing = db.get_session(conn, session_id) if session_id is not None else None
        if existing is None:
            session_id = session_id or generate_session_id()
            db.create_session(conn, session_id, str(project_path), mission)
        elif existing["status"] in db.FINAL_STATUSES:
            msg = f"Session {session_id} is already {existing['status']}"
            raise PolishError(msg)
        else:
            session_id = existing["id"]

        try:
            with SessionEventBus(db_path, session_id) as bus:
                controller = PolishController(
                    config,
                    project_path,
                    session_id,
                    bus,
                    mission=mission,
                    vcs=GitWorkspaceManager(project_path, Path(config.worktree_root)),
                    scorer=scorer,
                    agent=agent,
                    plateau=make_plateau_detector(config, judge),
                    state_path=get_state_dir(polish_dir) / f"{session_id}.json",
                )
                if on_start is not None:
                    on_start(controller, bus)

                db.start_session(conn, session_id)
                watcher = AbortWatcher(db_path, session_id, lambda: controller.abort("aborted"))
                watcher.start()
                try:
                    result = controller.run()
                finally:
                    watcher.stop()
        except Exception as e:
            db.complete_session(
                conn,
                session_id,
                status="failed",
                stopped_reason="error",
                error_message=str(e),
            )
            raise

        db.complete_session(
            conn,
            session_id,
            status=session_status_for(result.reason),
            stopped_reason=result.reason,
            initial_score=result.initial_score.score if result.initial_score else None,
            final_score=result.final_score.score if result.final_score else None,
            commits=len(result.commits),
            iterations=result.iterations,
            branch_name=result.branch_name,
            error_message=result.error,
        )
        logger.info("Session %s finished: %s", session_id, result.reason)
        return result
    finally:
        conn.close()
