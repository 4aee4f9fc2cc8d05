# Copyright (c) Syntropy Systems
"""The polish loop: score, select, fix, validate, commit or roll back."""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from polish.agent import FixAgentInvoker, FixContext, FixStatus, build_implement_prompt
from polish.errors import NoViableStrategyError, VcsError
from polish.metrics import MetricScorer, ShellMetricRunner
from polish.models import (
    CommitInfo,
    FailedAttempt,
    FailureReason,
    JSONObject,
    MetricResult,
    PolishResult,
    ScoreResult,
    StopReason,
    Strategy,
    utcnow,
)
from polish.plateau import PlateauDetector, make_plateau_detector
from polish.runner import run_command, shell_argv
from polish.state import create_initial_state, record_iteration, reset_state, save_state
from polish.strategy import StrategySelector
from polish.vcs import FinalizeResult, GitWorkspaceManager, PublishOptions, Workspace

if TYPE_CHECKING:
    from pathlib import Path

    from polish.agent import AgentRun
    from polish.config import PolishConfig
    from polish.events import SessionEventBus

logger = logging.getLogger(__name__)

ABORT_REASONS = ("aborted", "user_stopped")


class LoopPhase(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    IMPLEMENTING = "implementing"
    SCORING = "scoring"
    SELECTING = "selecting"
    FIXING = "fixing"
    VALIDATING = "validating"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


class _Aborted(Exception):
    """Raised inside the loop once an abort was requested."""


class _Stop(Exception):
    """Ends the loop with a terminal reason."""

    def __init__(self, reason: StopReason, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason: StopReason = reason
        self.message = message


class PolishController:
    """Drives one polish session end to end.

    The controller is synchronous and owns the worktree for the whole session.
    `abort()` may be called from any thread.
    """

    def __init__(
        self,
        config: PolishConfig,
        project_path: Path,
        session_id: str,
        bus: SessionEventBus,
        *,
        mission: Optional[str] = None,
        vcs: Optional[GitWorkspaceManager] = None,
        scorer: Optional[MetricScorer] = None,
        agent: Optional[FixAgentInvoker] = None,
        selector: Optional[StrategySelector] = None,
        plateau: Optional[PlateauDetector] = None,
        state_path: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.project_path = project_path
        self.session_id = session_id
        self.bus = bus
        self.mission = mission
        self.state_path = state_path
        self._clock = clock

        self._abort_event = threading.Event()
        self._abort_reason: StopReason = "aborted"
        self._lock = threading.Lock()
        self._current_run: Optional[AgentRun] = None

        self.vcs = vcs or GitWorkspaceManager(project_path)
        self.scorer = scorer or MetricScorer(
            ShellMetricRunner(
                timeout=config.metric_timeout,
                grace_period=config.kill_grace_period,
                cancel_event=self._abort_event,
            )
        )
        self.agent = agent or FixAgentInvoker(
            max_turns=config.max_turns,
            max_continuations=config.max_continuations,
            allowed_tools=config.allowed_tools,
            model=config.model,
            change_probe=self.vcs.has_changes,
        )
        self.selector = selector or StrategySelector(config.strategies, config.retry_ceiling)
        self.plateau = plateau or make_plateau_detector(config)

        self.phase = LoopPhase.IDLE
        self.state = create_initial_state()
        self.workspace: Optional[Workspace] = None
        self.initial_score: Optional[ScoreResult] = None
        self.current_score: Optional[ScoreResult] = None
        self.commits: list[CommitInfo] = []
        self.failed_attempts: list[FailedAttempt] = []
        self._implementation_commit: Optional[CommitInfo] = None
        self._consecutive_errors = 0
        # Last commit the tree may be rolled back to
        self._head: Optional[str] = None
        self._started_at = 0.0
        self._error: Optional[str] = None

    # --- Public API ---

    def abort(self, reason: StopReason = "aborted") -> None:
        """Stop the session as soon as possible. Thread-safe."""
        with self._lock:
            if self._abort_event.is_set():
                return
            self._abort_reason = reason
            self._abort_event.set()
            run = self._current_run
        logger.info("Abort requested for session %s (%s)", self.session_id, reason)
        if run is not None:
            run.close()

    @property
    def abort_requested(self) -> bool:
        return self._abort_event.is_set()

    def run(self) -> PolishResult:
        self._started_at = self._clock()
        reason: StopReason
        try:
            self._prepare()
            reason = self._loop()
        except _Aborted:
            reason = self._abort_reason
        except _Stop as stop:
            reason = stop.reason
            self._error = stop.message
        except VcsError as e:
            logger.error("Git failure in session %s: %s", self.session_id, e)
            self._error = str(e)
            self._emit("error", {"message": str(e), "fatal": True})
            reason = "error"
        except Exception as e:
            logger.exception("Unexpected failure in session %s", self.session_id)
            self._error = str(e) or type(e).__name__
            self._emit("error", {"message": self._error})
            reason = "error"
        return self._finish(reason)

    # --- Phases ---

    def _set_phase(self, phase: LoopPhase) -> None:
        logger.debug("Session %s: %s -> %s", self.session_id, self.phase.value, phase.value)
        self.phase = phase

    def _emit(self, event_type: str, data: JSONObject) -> None:
        self.bus.emit(event_type, data)

    def _status(self, message: str) -> None:
        self._emit("status", {"message": message})

    def _check_abort(self) -> None:
        if self._abort_event.is_set():
            raise _Aborted

    def _elapsed_ms(self) -> float:
        return (self._clock() - self._started_at) * 1000

    def _prepare(self) -> None:
        self._check_abort()
        self._set_phase(LoopPhase.PREPARING)
        self.vcs.preflight()
        self.workspace = self.vcs.create_isolated_workspace(
            self.session_id, base_branch=self.config.base_branch
        )
        self.state = create_initial_state(str(self.workspace.path))
        self._head = self.workspace.base_commit
        self._emit(
            "worktree_created",
            {
                "path": str(self.workspace.path),
                "branch_name": self.workspace.branch_name,
                "base_branch": self.workspace.base_branch,
            },
        )

    def _loop(self) -> StopReason:
        if self.mission:
            self._implement()

        self._emit("phase", {"phase": "polish"})
        initial = self._score()
        self.initial_score = initial
        self.current_score = initial
        self.state.best_score = initial.score
        self._emit(
            "init",
            {
                "initial_score": initial.score,
                "metrics": _dump_metrics(initial.metrics),
                "target": self.config.target,
                "branch_name": self._workspace.branch_name,
            },
        )
        self._emit(
            "score",
            {
                "score": initial.score,
                "metrics": _dump_metrics(initial.metrics),
                "delta": 0.0,
                "iteration": 0,
            },
        )

        if initial.score >= self.config.target:
            self._status(f"Initial score {initial.score:.1f} already meets target")
            return "target_reached"

        while True:
            self._check_abort()
            if self.state.iteration >= self.config.max_iterations:
                return "max_iterations"
            if self._elapsed_ms() >= self.config.max_duration:
                return "timeout"

            reason = self._iterate(self.state.iteration + 1)
            if reason is not None:
                return reason

    def _implement(self) -> None:
        mission = self.mission or ""
        self._set_phase(LoopPhase.IMPLEMENTING)
        self._emit("phase", {"phase": "implement", "mission": mission})

        prompt = build_implement_prompt(mission, self.config.rules)
        status, error = self._drive_agent(
            lambda cancel: self.agent.run_task(prompt, self._workspace.path, cancel_event=cancel)
        )
        self._check_abort()

        if status not in ("success", "no_changes"):
            self._rollback()
            raise _Stop("error", error or f"Implementation failed: {status}")

        self._absorb_agent_commits()
        if not self.vcs.has_changes(self._workspace.path):
            self._status("Implementation made no changes")
            return

        self._set_phase(LoopPhase.COMMITTING)
        message = f"feat: {mission}"
        commit_hash = self.vcs.commit_change(self._workspace.path, message)
        self._head = commit_hash
        self._implementation_commit = CommitInfo(hash=commit_hash, message=message, score_delta=0.0)
        self._emit(
            "commit",
            {"hash": commit_hash, "message": message, "score_delta": 0.0, "iteration": 0},
        )

    def _iterate(self, iteration: int) -> Optional[StopReason]:
        """Run one iteration. Returns a terminal reason to stop the loop."""
        current = self._current

        self._set_phase(LoopPhase.SELECTING)
        try:
            strategy = self.selector.select_strategy(current, self.failed_attempts)
        except NoViableStrategyError as e:
            self._status(str(e))
            return "plateau"

        self._emit(
            "strategy",
            {"name": strategy.name, "focus": strategy.focus, "iteration": iteration},
        )

        improved_score = self._attempt(strategy, current, iteration)
        if improved_score is not None:
            self.current_score = improved_score

        record_iteration(self.state, self._current.score, self.config.min_improvement)
        if self.state_path is not None:
            save_state(self.state, self.state_path)

        if self._consecutive_errors >= self.config.max_consecutive_errors:
            self._error = f"{self._consecutive_errors} consecutive agent errors"
            return "error"

        decision = self.plateau.decide(self.state, self._current, self.config.target)
        if decision.should_stop:
            self._status(decision.detail or decision.reason)
            return decision.reason  # type: ignore[return-value]
        return None

    def _attempt(
        self,
        strategy: Strategy,
        current: ScoreResult,
        iteration: int,
    ) -> Optional[ScoreResult]:
        """Try one fix. Returns the new score when the change was committed."""
        target_metric = current.get(strategy.focus)
        if target_metric is None:
            msg = f"Strategy targets unknown metric {strategy.focus!r}"
            raise RuntimeError(msg)

        context = FixContext(
            project_path=self._workspace.path,
            strategy=strategy,
            target_metric=target_metric,
            failed_attempts=list(self.failed_attempts),
            rules=list(self.config.rules),
        )

        self._set_phase(LoopPhase.FIXING)
        self._head = self.vcs.head_commit(self._workspace.path)
        status, error = self._drive_agent(
            lambda cancel: self.agent.run_single_fix(context, cancel_event=cancel)
        )
        self._check_abort()

        if status in ("agent_error", "continuation_exhausted", "cancelled"):
            self._consecutive_errors += 1
            self._reject(strategy, iteration, "error", error or status)
            return None
        self._consecutive_errors = 0

        if self._absorb_agent_commits() and status == "no_changes":
            status = "success"
        if status == "no_changes":
            self._reject(strategy, iteration, "no_improvement", "Agent made no changes")
            return None

        self._set_phase(LoopPhase.VALIDATING)
        if self.config.validate_command and not self._validate():
            self._reject(strategy, iteration, "tests_failed", "Validation command failed")
            return None

        new_score = self._score()
        delta = new_score.score - current.score
        self._emit(
            "score",
            {
                "score": new_score.score,
                "metrics": _dump_metrics(new_score.metrics),
                "delta": delta,
                "iteration": iteration,
            },
        )

        if delta > self.config.min_improvement:
            self._commit(strategy, iteration, delta)
            return new_score

        self._reject(
            strategy,
            iteration,
            "no_improvement",
            f"Score {new_score.score:.1f} did not beat {current.score:.1f}",
        )
        return None

    def _drive_agent(
        self,
        start: Callable[[threading.Event], AgentRun],
    ) -> tuple[FixStatus, Optional[str]]:
        """Forward every agent event to the bus until the run ends."""
        run = start(self._abort_event)
        with self._lock:
            self._current_run = run
        try:
            for event in run:
                self.bus.publish(event.to_event())
        finally:
            run.close()
            with self._lock:
                self._current_run = None
        status: FixStatus = run.status or "cancelled"
        if run.error:
            logger.info("Agent finished with %s: %s", status, run.error)
        return status, run.error

    def _validate(self) -> bool:
        command = self.config.validate_command or ""
        result = run_command(
            shell_argv(command),
            workdir=self._workspace.path,
            timeout=self.config.metric_timeout,
            cancel_event=self._abort_event,
            grace_period=self.config.kill_grace_period,
        )
        self._check_abort()
        return result.ok

    def _score(self) -> ScoreResult:
        self._set_phase(LoopPhase.SCORING)
        result = self.scorer.score(self.config.metrics, self._workspace.path)
        self._check_abort()
        return result

    def _commit(self, strategy: Strategy, iteration: int, delta: float) -> None:
        self._set_phase(LoopPhase.COMMITTING)
        message = f"fix({strategy.focus}): {strategy.name} - +{delta:.1f} pts"
        commit_hash = self.vcs.commit_change(self._workspace.path, message)
        self._head = commit_hash
        commit = CommitInfo(hash=commit_hash, message=message, score_delta=delta)
        self.commits.append(commit)
        self._emit(
            "commit",
            {
                "hash": commit_hash,
                "message": message,
                "score_delta": delta,
                "iteration": iteration,
            },
        )

    def _reject(
        self,
        strategy: Strategy,
        iteration: int,
        reason: FailureReason,
        message: str,
    ) -> None:
        self._rollback()
        self.failed_attempts.append(
            FailedAttempt(strategy=strategy.name, focus=strategy.focus, reason=reason)
        )
        self._emit(
            "rollback",
            {
                "reason": reason,
                "failed_strategy": strategy.name,
                "focus": strategy.focus,
                "iteration": iteration,
                "message": message,
            },
        )

    def _rollback(self) -> None:
        self._set_phase(LoopPhase.ROLLING_BACK)
        self.vcs.rollback_change(self._workspace.path, to_commit=self._head)

    def _absorb_agent_commits(self) -> bool:
        """Fold commits the agent made itself back into the working tree.

        Returns True when HEAD had moved.
        """
        path = self._workspace.path
        if self._head is None or self.vcs.head_commit(path) == self._head:
            return False
        logger.info("Agent committed on its own; unstaging onto %s", self._head[:8])
        self.vcs.uncommit(path, self._head)
        return True

    # --- Finalizing ---

    def _finish(self, reason: StopReason) -> PolishResult:
        self._set_phase(LoopPhase.FINALIZING)
        finalized: Optional[FinalizeResult] = None

        if self.workspace is not None:
            finalized = self._close_workspace(reason)

        branch_name = None
        if finalized is not None and finalized.kept:
            branch_name = finalized.branch_name

        scores = list(self.state.scores)
        if self.initial_score is not None:
            scores.insert(0, self.initial_score.score)

        result = PolishResult(
            initial_score=self.initial_score,
            final_score=self.current_score,
            iterations=self.state.iteration,
            commits=list(self.commits),
            reason=reason,
            branch_name=branch_name,
            scores=scores,
            duration_seconds=round(self._clock() - self._started_at, 3),
            pr_url=finalized.pr_url if finalized else None,
            error=self._error,
        )

        self._emit(
            "result",
            {
                "success": result.success,
                "initial_score": self.initial_score.score if self.initial_score else None,
                "final_score": self.current_score.score if self.current_score else None,
                "commits": [c.model_dump(mode="json") for c in self.commits],
                "iterations": result.iterations,
                "stopped_reason": reason,
                "scores": scores,
                "branch_name": branch_name,
                "pr_url": result.pr_url,
                "diff_stat": finalized.diff_stat if finalized is not None else "",
                "error": self._error,
            },
        )

        if reason in ABORT_REASONS:
            self._emit("aborted", {"reason": reason, "timestamp": utcnow()})
            self._set_phase(LoopPhase.ABORTED)
        elif reason == "error":
            self._set_phase(LoopPhase.ERRORED)
        else:
            self._set_phase(LoopPhase.DONE)

        if self.state_path is not None:
            reset_state(self.state_path)
        return result

    def _close_workspace(self, reason: StopReason) -> Optional[FinalizeResult]:
        workspace = self._workspace
        finalized: Optional[FinalizeResult] = None

        try:
            # Leave nothing half-applied behind the last commit
            self.vcs.rollback_change(workspace.path, to_commit=self._head)

            all_commits = list(self.commits)
            if self._implementation_commit is not None:
                all_commits.insert(0, self._implementation_commit)

            publish = None
            if reason not in (*ABORT_REASONS, "error"):
                publish = PublishOptions(push=self.config.push, create_pr=self.config.create_pr)
            finalized = self.vcs.finalize(workspace, all_commits, publish)
        except VcsError as e:
            logger.error("Finalizing session %s failed: %s", self.session_id, e)
            self._error = self._error or str(e)
            self._emit("error", {"message": str(e)})

        keep_branch = bool(self.commits) or self._implementation_commit is not None
        try:
            self.vcs.destroy_workspace(workspace, keep_branch=keep_branch)
            self._emit(
                "worktree_cleanup",
                {"path": str(workspace.path), "branch_kept": keep_branch},
            )
        except VcsError as e:
            logger.warning("Could not remove worktree %s: %s", workspace.path, e)
        return finalized

    # --- Helpers ---

    @property
    def _workspace(self) -> Workspace:
        if self.workspace is None:
            msg = "No workspace: session was not prepared"
            raise RuntimeError(msg)
        return self.workspace

    @property
    def _current(self) -> ScoreResult:
        if self.current_score is None:
            msg = "No score yet"
            raise RuntimeError(msg)
        return self.current_score


def _dump_metrics(metrics: list[MetricResult]) -> list[JSONObject]:
    return [m.model_dump(mode="json", exclude={"output"}) for m in metrics]
