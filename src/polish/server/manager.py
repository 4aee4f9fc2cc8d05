# Copyright (c) Syntropy Systems
"""Background execution of polish sessions for the HTTP API."""
from __future__ import annotations

import logging
from threading import Lock, Thread
from typing import TYPE_CHECKING, Any, Callable, Optional

from polish import db
from polish.config import get_db_path, load_config, validate_config
from polish.session import create_session_record, run_session

if TYPE_CHECKING:
    from pathlib import Path

    from polish.config import PolishConfig
    from polish.controller import PolishController
    from polish.events import SessionEventBus
    from polish.models import PolishResult

logger = logging.getLogger(__name__)

SessionRunner = Callable[..., "PolishResult"]


class SessionManager:
    """Starts sessions in worker threads and keeps handles for abort and shutdown.

    One manager is created per application and stored on `app.state`.
    `runner` defaults to `run_session`; extra `session_options` are passed to
    it unchanged (e.g. a scorer or agent in tests).
    """

    def __init__(
        self,
        polish_dir: Path,
        runner: SessionRunner = run_session,
        **session_options: Any,
    ) -> None:
        self.polish_dir = polish_dir
        self.runner = runner
        self.session_options = session_options
        self._lock = Lock()
        self._threads: dict[str, Thread] = {}
        self._controllers: dict[str, PolishController] = {}

    @property
    def db_path(self) -> Path:
        return get_db_path(self.polish_dir)

    def start(self, mission: Optional[str] = None, **overrides: object) -> str:
        """Create a session row and run it in the background. Returns its ID.

        Raises ConfigError when the configuration (with overrides) is invalid.
        """
        config = load_config(self.polish_dir).with_overrides(**overrides)
        validate_config(config)
        session_id = create_session_record(self.polish_dir, mission=mission)

        thread = Thread(
            target=self._run,
            args=(session_id, config, mission),
            name=f"polish-session-{session_id}",
            daemon=True,
        )
        with self._lock:
            self._threads[session_id] = thread
        thread.start()
        logger.info("Started session %s", session_id)
        return session_id

    def _run(self, session_id: str, config: PolishConfig, mission: Optional[str]) -> None:
        def on_start(controller: PolishController, _bus: SessionEventBus) -> None:
            with self._lock:
                self._controllers[session_id] = controller

        try:
            self.runner(
                self.polish_dir,
                config,
                session_id=session_id,
                mission=mission,
                on_start=on_start,
                **self.session_options,
            )
        except Exception:
            logger.exception("Session %s crashed", session_id)
        finally:
            with self._lock:
                self._threads.pop(session_id, None)
                self._controllers.pop(session_id, None)

    def abort(self, session_id: str) -> str:
        """Request a stop. Returns the previous status.

        Raises ValueError if the session does not exist.
        """
        conn = db.get_connection(self.db_path)
        try:
            old_status = db.request_abort(conn, session_id)
        finally:
            conn.close()

        with self._lock:
            controller = self._controllers.get(session_id)
        if controller is not None:
            controller.abort("aborted")
        return old_status

    def active_sessions(self) -> list[str]:
        with self._lock:
            return [sid for sid, t in self._threads.items() if t.is_alive()]

    def shutdown(self, timeout: float = 30.0) -> None:
        """Abort every session this manager started and wait for them."""
        with self._lock:
            controllers = list(self._controllers.values())
            threads = list(self._threads.values())

        for controller in controllers:
            controller.abort("aborted")
        for thread in threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Session thread %s did not stop in time", thread.name)
