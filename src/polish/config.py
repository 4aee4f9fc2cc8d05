# Copyright (c) Syntropy Systems
"""Configuration management for polish."""
from __future__ import annotations

import tempfile
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Literal, Optional, cast

import yaml
from pydantic import TypeAdapter, ValidationError

from polish.errors import ConfigError
from polish.models import Metric, StrategyConfig

POLISH_DIR_NAME = ".polish"
CONFIG_FILE_NAME = "config.yaml"

DEFAULT_ALLOWED_TOOLS = ["Read", "Edit", "Write", "Bash", "Glob", "Grep"]

PlateauMode = Literal["stalled", "llm"]

_metrics_adapter = TypeAdapter(list[Metric])
_strategies_adapter = TypeAdapter(list[StrategyConfig])


def _default_worktree_root() -> str:
    return str(Path(tempfile.gettempdir()) / "polish-worktrees")


@dataclass
class PolishConfig:
    """Configuration for a polish session."""

    metrics: list[Metric] = field(default_factory=list)
    rules: list[str] = field(default_factory=list)
    strategies: list[StrategyConfig] = field(default_factory=list)

    # Score (0-100) at which the loop stops
    target: float = 95.0

    # Loop ceilings
    max_iterations: int = 50
    max_duration: int = 7_200_000  # milliseconds
    max_stalled: int = 5
    max_consecutive_errors: int = 3

    # Plateau detection mode
    plateau_detection: PlateauMode = "stalled"

    # Failed attempts per (strategy, metric) before the strategy is skipped
    retry_ceiling: int = 2

    # Score delta that counts as an improvement
    min_improvement: float = 0.0

    # Agent turn budget
    max_turns: int = 30
    max_continuations: int = 5
    model: Optional[str] = None
    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))

    # Subprocess handling (seconds)
    metric_timeout: int = 300
    kill_grace_period: int = 10
    validate_command: Optional[str] = None

    # Workspace and publishing
    base_branch: Optional[str] = None
    worktree_root: str = field(default_factory=_default_worktree_root)
    push: bool = False
    create_pr: bool = False

    def with_overrides(self, **overrides: object) -> PolishConfig:
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if v is not None and k in known}
        return replace(self, **changes)


def find_polish_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .polish directory by walking up from start_path.

    Returns None if no .polish directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        polish_dir = current / POLISH_DIR_NAME
        if polish_dir.is_dir():
            return polish_dir
        current = current.parent

    # Check root
    polish_dir = current / POLISH_DIR_NAME
    if polish_dir.is_dir():
        return polish_dir

    return None


def require_polish_dir() -> Path:
    """Get polish directory or raise an error if not found."""
    polish_dir = find_polish_dir()
    if polish_dir is None:
        msg = "No .polish directory found. Run 'polish init' first."
        raise RuntimeError(msg)
    return polish_dir


def get_project_root(polish_dir: Path) -> Path:
    """The project a .polish directory belongs to."""
    return polish_dir.parent


def get_db_path(polish_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if polish_dir is None:
        polish_dir = require_polish_dir()
    return polish_dir / "polish.db"


def get_state_dir(polish_dir: Path | None = None) -> Path:
    """Get the directory holding per-session state snapshots."""
    if polish_dir is None:
        polish_dir = require_polish_dir()
    return polish_dir / "state"


def get_hook_state_path(polish_dir: Path | None = None) -> Path:
    """Get the state file used by the stop hook."""
    if polish_dir is None:
        polish_dir = require_polish_dir()
    return polish_dir / "state.json"


def _as_int(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"'{key}' must be a number, got {value!r}"
        raise ConfigError(msg)
    return int(value)


def _as_float(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"'{key}' must be a number, got {value!r}"
        raise ConfigError(msg)
    return float(value)


def _as_bool(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        msg = f"'{key}' must be true or false, got {value!r}"
        raise ConfigError(msg)
    return value


def _as_str(data: dict[str, object], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        msg = f"'{key}' must be a string, got {value!r}"
        raise ConfigError(msg)
    return value


def _as_str_list(data: dict[str, object], key: str) -> Optional[list[str]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        msg = f"'{key}' must be a list of strings"
        raise ConfigError(msg)
    return cast("list[str]", value)


def parse_config(data: dict[str, object]) -> PolishConfig:
    """Build a PolishConfig from a parsed YAML mapping."""
    config = PolishConfig()

    try:
        config.metrics = _metrics_adapter.validate_python(data.get("metrics") or [])
        config.strategies = _strategies_adapter.validate_python(data.get("strategies") or [])
    except ValidationError as e:
        msg = f"Invalid configuration: {e}"
        raise ConfigError(msg) from e

    names = [m.name for m in config.metrics]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        msg = f"Duplicate metric names: {', '.join(duplicates)}"
        raise ConfigError(msg)

    rules = _as_str_list(data, "rules")
    if rules is not None:
        config.rules = rules
    allowed_tools = _as_str_list(data, "allowed_tools")
    if allowed_tools is not None:
        config.allowed_tools = allowed_tools

    config.target = _as_float(data, "target", config.target)
    if not 0 <= config.target <= 100:
        msg = f"'target' must be between 0 and 100, got {config.target}"
        raise ConfigError(msg)

    config.max_iterations = _as_int(data, "max_iterations", config.max_iterations)
    config.max_duration = _as_int(data, "max_duration", config.max_duration)
    config.max_stalled = _as_int(data, "max_stalled", config.max_stalled)
    config.max_consecutive_errors = _as_int(
        data, "max_consecutive_errors", config.max_consecutive_errors
    )
    config.retry_ceiling = _as_int(data, "retry_ceiling", config.retry_ceiling)
    config.min_improvement = _as_float(data, "min_improvement", config.min_improvement)
    config.max_turns = _as_int(data, "max_turns", config.max_turns)
    config.max_continuations = _as_int(data, "max_continuations", config.max_continuations)
    config.metric_timeout = _as_int(data, "metric_timeout", config.metric_timeout)
    config.kill_grace_period = _as_int(data, "kill_grace_period", config.kill_grace_period)

    plateau = _as_str(data, "plateau_detection")
    if plateau is not None:
        if plateau not in ("stalled", "llm"):
            msg = f"'plateau_detection' must be 'stalled' or 'llm', got {plateau!r}"
            raise ConfigError(msg)
        config.plateau_detection = cast("PlateauMode", plateau)

    config.model = _as_str(data, "model")
    config.validate_command = _as_str(data, "validate_command")
    config.base_branch = _as_str(data, "base_branch")
    worktree_root = _as_str(data, "worktree_root")
    if worktree_root is not None:
        config.worktree_root = worktree_root
    config.push = _as_bool(data, "push", config.push)
    config.create_pr = _as_bool(data, "create_pr", config.create_pr)

    return config


def load_config(polish_dir: Path | None = None) -> PolishConfig:
    """Load configuration from .polish/config.yaml.

    Looks for config in:
    1. Provided polish_dir
    2. Nearest .polish directory walking up
    """
    if polish_dir is None:
        polish_dir = require_polish_dir()

    config_path = polish_dir / CONFIG_FILE_NAME
    if not config_path.exists():
        msg = f"No configuration found at {config_path}"
        raise ConfigError(msg)

    try:
        with config_path.open() as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        msg = f"Could not parse {config_path}: {e}"
        raise ConfigError(msg) from e

    if not isinstance(raw, dict):
        msg = f"{config_path} must contain a mapping"
        raise ConfigError(msg)

    return parse_config(cast("dict[str, object]", raw))


def validate_config(config: PolishConfig) -> None:
    """Check the invariants a session needs before it starts."""
    if not config.metrics:
        msg = "At least one metric must be configured"
        raise ConfigError(msg)
    if config.max_iterations < 1:
        msg = "'max_iterations' must be at least 1"
        raise ConfigError(msg)
    if config.max_stalled < 1:
        msg = "'max_stalled' must be at least 1"
        raise ConfigError(msg)
    if config.retry_ceiling < 1:
        msg = "'retry_ceiling' must be at least 1"
        raise ConfigError(msg)
    if config.min_improvement < 0:
        msg = "'min_improvement' must not be negative"
        raise ConfigError(msg)


DEFAULT_CONFIG_YAML = """\
# polish configuration
# Each metric command must print a number on stdout.

target: 95
max_iterations: 50
max_duration: 7200000  # milliseconds
max_stalled: 5
plateau_detection: stalled  # stalled | llm

metrics:
  - name: tests
    command: "pytest -q 2>&1 | tail -n 1 | grep -oE '[0-9]+ passed' | grep -oE '[0-9]+' || echo 0"
    weight: 2
    target: 100
    higher_is_better: true
  - name: lint
    command: "ruff check . --statistics 2>/dev/null | wc -l"
    weight: 1
    target: 100
    higher_is_better: false

rules:
  - Do not delete or skip tests.
  - Keep changes small and focused.

strategies: []
"""
