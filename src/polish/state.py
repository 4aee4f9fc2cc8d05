# Copyright (c) Syntropy Systems
"""Persistence of loop state snapshots."""
from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from polish.models import PolishState, utcnow

logger = logging.getLogger(__name__)


def create_initial_state(worktree_path: Optional[str] = None) -> PolishState:
    """Fresh state for a new session."""
    return PolishState(worktree_path=worktree_path)


def load_state(path: Path) -> PolishState:
    """Load state from disk, or a fresh state when missing or unreadable."""
    if not path.exists():
        return create_initial_state()
    try:
        return PolishState.model_validate_json(path.read_text())
    except (OSError, ValueError, ValidationError) as e:
        logger.warning("Ignoring unreadable state file %s: %s", path, e)
        return create_initial_state()


def save_state(state: PolishState, path: Path) -> None:
    """Write state atomically (temp file + rename)."""
    state.last_updated = utcnow()
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(state.model_dump_json(indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def reset_state(path: Path) -> None:
    """Remove a state file if present."""
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


def record_iteration(
    state: PolishState,
    score: float,
    min_improvement: float = 0.0,
) -> bool:
    """Fold a scored iteration into the state.

    The stalled count increments unless the score beats the best score seen
    so far by more than `min_improvement`, in which case it resets to 0.
    Returns True when the iteration counted as an improvement.
    """
    state.iteration += 1
    state.scores.append(score)

    improved = state.best_score is None or score - state.best_score > min_improvement
    if improved:
        state.best_score = score
        state.stalled_count = 0
        state.last_improvement = state.iteration
    else:
        state.stalled_count += 1
    return improved
