# Copyright (c) Syntropy Systems
"""polish hook commands: drive the loop from a Claude Code Stop hook.

Claude Code runs `polish hook check` whenever the agent wants to stop. The
check scores the project in place, commits improvements and answers with a
JSON decision: `approve` lets the agent stop, `block` sends it back to work
with feedback about the worst metric.
"""
from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import typer
from rich.console import Console

from polish.cli.render import format_score
from polish.config import (
    get_hook_state_path,
    get_project_root,
    load_config,
    require_polish_dir,
    validate_config,
)
from polish.errors import PolishError, VcsError
from polish.metrics import MetricScorer, ShellMetricRunner
from polish.plateau import make_plateau_detector
from polish.state import load_state, record_iteration, save_state
from polish.strategy import StrategySelector
from polish.vcs import GitWorkspaceManager

if TYPE_CHECKING:
    from polish.models import MetricResult, ScoreResult
    from polish.plateau import LlmJudge

logger = logging.getLogger(__name__)

console = Console()

hook_app = typer.Typer(
    help="Claude Code Stop hook integration.",
    no_args_is_help=True,
)

HOOK_COMMAND = "polish hook check"
HOOK_EVENT = "Stop"
SETTINGS_PATH = Path(".claude") / "settings.json"
FEEDBACK_OUTPUT_CHARS = 4000


def worst_metric(score: ScoreResult) -> Optional[MetricResult]:
    """The metric furthest from its target by weighted distance."""
    ranked = StrategySelector().rank(score)
    if ranked:
        return ranked[0]
    if score.metrics:
        return min(score.metrics, key=lambda m: m.normalized_score)
    return None


def build_feedback_prompt(score: ScoreResult, target: float) -> str:
    """Tell the agent what to work on next."""
    gap = target - score.score
    lines = [
        f"The code still needs improvement. Current score: {score.score:.1f}/{target:g} "
        f"({gap:.1f} points to go).",
        "",
    ]

    metric = worst_metric(score)
    if metric is not None:
        lines.append(
            f'The worst performing metric is "{metric.name}" with score '
            f"{metric.normalized_score:.1f}/100 "
            f"({100 - metric.normalized_score:.1f} points gap).",
        )
        lines.append("")
        output = metric.error or metric.output
        if output:
            if len(output) > FEEDBACK_OUTPUT_CHARS:
                output = output[-FEEDBACK_OUTPUT_CHARS:] + "\n... (truncated)"
            lines.extend([f"Here is the output from running the {metric.name} check:", "", "```", output, "```", ""])
        lines.append(f'Please fix the issues in "{metric.name}" to improve the score.')
    return "\n".join(lines)


def evaluate_stop(
    polish_dir: Path,
    hook_input: dict[str, Any],
    scorer: Optional[MetricScorer] = None,
    judge: Optional[LlmJudge] = None,
) -> dict[str, str]:
    """Decide whether the agent may stop. Returns the hook's JSON answer."""
    if hook_input.get("stop_hook_active"):
        return {
            "decision": "approve",
            "reason": "Stop hook already active - allowing stop to prevent infinite loop",
        }

    config = load_config(polish_dir)
    validate_config(config)
    project = get_project_root(polish_dir)
    state_path = get_hook_state_path(polish_dir)

    scorer = scorer or MetricScorer(
        ShellMetricRunner(timeout=config.metric_timeout, grace_period=config.kill_grace_period)
    )
    score = scorer.score(config.metrics, project)

    state = load_state(state_path)
    previous = state.best_score
    improved = record_iteration(state, score.score, config.min_improvement)
    if improved:
        _commit_improvement(project, score, previous)
    save_state(state, state_path)

    decision = make_plateau_detector(config, judge).decide(state, score, config.target)
    logger.debug("Hook decision: %s (%s)", decision.reason, decision.detail)
    if decision.should_stop:
        return {"decision": "approve", "reason": decision.detail}
    return {"decision": "block", "reason": build_feedback_prompt(score, config.target)}


def _commit_improvement(project: Path, score: ScoreResult, previous: Optional[float]) -> None:
    vcs = GitWorkspaceManager(project)
    try:
        if not vcs.has_changes(project):
            return
        metric = worst_metric(score)
        focus = metric.name if metric is not None else "score"
        message = f"polish({focus}): {format_score(previous)} -> {score.score:.1f}"
        commit = vcs.commit_change(project, message)
    except VcsError as e:
        logger.warning("Could not commit improvement: %s", e)
        return
    logger.info("Committed %s: %s", commit[:8], message)


def _read_hook_input() -> dict[str, Any]:
    if sys.stdin is None or sys.stdin.isatty():
        return {}
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring invalid hook input")
        return {}
    return data if isinstance(data, dict) else {}


@hook_app.command("check")
def check() -> None:
    """Score the project and tell Claude Code whether it may stop.

    Reads the hook payload from stdin and prints a JSON decision. Errors
    approve the stop so a broken setup never traps the agent.
    """
    hook_input = _read_hook_input()
    try:
        polish_dir = require_polish_dir()
        output = evaluate_stop(polish_dir, hook_input)
    except (PolishError, RuntimeError) as e:
        output = {"decision": "approve", "reason": f"Hook error: {e}"}
    except Exception as e:  # noqa: BLE001
        logger.exception("Stop hook check failed")
        output = {"decision": "approve", "reason": f"Hook error: {type(e).__name__}: {e}"}
    typer.echo(json.dumps(output))


# --- Settings management ---


def _settings_path(project: Path) -> Path:
    return project / SETTINGS_PATH


def load_settings(path: Path) -> dict[str, Any]:
    """Read a Claude Code settings file. Missing files are empty."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        msg = f"Invalid JSON in {path}: {e}"
        raise PolishError(msg) from e
    if not isinstance(data, dict):
        msg = f"{path} must contain a JSON object"
        raise PolishError(msg)
    return data


def save_settings(path: Path, settings: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, indent=2) + "\n")


def _is_polish_hook(hook: object) -> bool:
    return isinstance(hook, dict) and hook.get("command") == HOOK_COMMAND


def is_hook_installed(settings: dict[str, Any]) -> bool:
    groups = settings.get("hooks", {}).get(HOOK_EVENT, [])
    return any(
        _is_polish_hook(hook)
        for group in groups
        if isinstance(group, dict)
        for hook in group.get("hooks", [])
    )


def add_hook(settings: dict[str, Any]) -> bool:
    """Add the Stop hook entry. Returns False if it was already there."""
    if is_hook_installed(settings):
        return False
    groups = settings.setdefault("hooks", {}).setdefault(HOOK_EVENT, [])
    groups.append({"hooks": [{"type": "command", "command": HOOK_COMMAND}]})
    return True


def remove_hook(settings: dict[str, Any]) -> bool:
    """Remove every polish Stop hook entry. Returns True if one was removed."""
    hooks = settings.get("hooks")
    if not isinstance(hooks, dict) or HOOK_EVENT not in hooks:
        return False

    removed = False
    kept_groups = []
    for group in hooks[HOOK_EVENT]:
        if not isinstance(group, dict):
            kept_groups.append(group)
            continue
        entries = group.get("hooks", [])
        kept = [h for h in entries if not _is_polish_hook(h)]
        removed = removed or len(kept) != len(entries)
        if kept:
            kept_groups.append({**group, "hooks": kept})

    if kept_groups:
        hooks[HOOK_EVENT] = kept_groups
    else:
        del hooks[HOOK_EVENT]
    if not hooks:
        del settings["hooks"]
    return removed


@hook_app.command("install")
def install() -> None:
    """Register `polish hook check` as the project's Stop hook."""
    try:
        polish_dir = require_polish_dir()
        path = _settings_path(get_project_root(polish_dir))
        settings = load_settings(path)
    except (PolishError, RuntimeError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if not add_hook(settings):
        console.print(f"[yellow]Stop hook already installed in {path}[/yellow]")
        return
    save_settings(path, settings)
    console.print(f"[green]Installed Stop hook:[/green] {path}")


@hook_app.command("uninstall")
def uninstall() -> None:
    """Remove the polish Stop hook from the project's settings."""
    try:
        polish_dir = require_polish_dir()
        path = _settings_path(get_project_root(polish_dir))
        settings = load_settings(path)
    except (PolishError, RuntimeError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if not remove_hook(settings):
        console.print("[dim]Stop hook is not installed[/dim]")
        return
    save_settings(path, settings)
    console.print(f"[green]Removed Stop hook:[/green] {path}")


@hook_app.command("status")
def status() -> None:
    """Show whether the Stop hook is installed and its loop state."""
    try:
        polish_dir = require_polish_dir()
        path = _settings_path(get_project_root(polish_dir))
        settings = load_settings(path)
    except (PolishError, RuntimeError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if is_hook_installed(settings):
        console.print(f"[green]installed[/green] {path}")
    else:
        console.print("[dim]not installed[/dim]")

    state_path = get_hook_state_path(polish_dir)
    if state_path.exists():
        state = load_state(state_path)
        console.print(f"  [dim]iteration:[/dim] {state.iteration}")
        console.print(f"  [dim]best score:[/dim] {format_score(state.best_score)}")
        console.print(f"  [dim]stalled:[/dim] {state.stalled_count}")
