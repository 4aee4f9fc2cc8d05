# Copyright (c) Syntropy Systems
"""Process runner with orphan prevention and cancellation."""
from __future__ import annotations

import contextlib
import ctypes
import os
import signal
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from threading import Event

# Keep only the tail of long outputs (test runners can be chatty)
MAX_OUTPUT_CHARS = 20_000
POLL_INTERVAL = 0.05


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan processes when polish crashes mid-iteration.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


@dataclass
class CommandResult:
    """Outcome of a finished command."""

    exit_code: int
    output: str
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


class CommandRunner:
    """Runs a command with proper process management.

    Features:
    - Uses start_new_session=True for reliable process group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Captures stdout/stderr to a log file
    - Provides graceful and forceful termination
    """

    command_argv: list[str]
    workdir: Path
    output_path: Path
    env: dict[str, str]
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _output_file: IO[str] | None

    def __init__(
        self,
        command_argv: list[str],
        workdir: Path,
        output_path: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize a command runner.

        Args:
            command_argv: Command as list of argv tokens
            workdir: Working directory to run the command in
            output_path: File receiving combined stdout/stderr
            env: Additional environment variables

        """
        self.command_argv = command_argv
        self.workdir = workdir
        self.output_path = output_path

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._output_file = None

    def start(self) -> None:
        """Start the process."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._output_file = self.output_path.open("w")

        self._process = subprocess.Popen(  # noqa: S603
            self.command_argv,
            stdout=self._output_file,
            stderr=subprocess.STDOUT,
            env=self.env,
            cwd=str(self.workdir),
            start_new_session=True,  # Creates new process group
            preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
        )

    def wait(self, timeout: Optional[float] = None) -> int | None:
        """Wait for the process to finish and return exit code.

        Returns None if it is still running after `timeout` seconds.
        """
        if self._process is None:
            return self._exit_code or 0

        try:
            code = self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._exit_code = code
        self._cleanup()
        return code

    def kill(self, grace_period: float = 10.0) -> int:
        """Kill the process group.

        First sends SIGTERM to the process group, waits for grace_period,
        then sends SIGKILL if still alive.

        Returns:
            Exit code (negative signal number if killed)

        """
        if self._process is None:
            return self._exit_code or 0

        if self._process.poll() is not None:
            exit_code = self._process.returncode or 0
            self._exit_code = exit_code
            self._cleanup()
            return exit_code

        try:
            pgid = os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            self._cleanup()
            return self._exit_code or -signal.SIGKILL

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)

        deadline = time.time() + grace_period
        while time.time() < deadline:
            if self._process.poll() is not None:
                exit_code = self._process.returncode or 0
                self._exit_code = exit_code
                self._cleanup()
                return exit_code
            time.sleep(0.1)

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        exit_code = self._process.returncode or -signal.SIGKILL
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def read_output(self) -> str:
        """Return the captured output tail."""
        if not self.output_path.exists():
            return ""
        text = self.output_path.read_text(errors="replace")
        if len(text) > MAX_OUTPUT_CHARS:
            return text[-MAX_OUTPUT_CHARS:]
        return text

    def _cleanup(self) -> None:
        """Cleanup resources."""
        if self._output_file:
            with contextlib.suppress(Exception):
                self._output_file.close()
            self._output_file = None


def run_command(
    command_argv: list[str],
    workdir: Path,
    timeout: Optional[float] = None,
    cancel_event: Optional[Event] = None,
    grace_period: float = 10.0,
    env: Optional[dict[str, str]] = None,
) -> CommandResult:
    """Run a command to completion, honouring a timeout and a cancel flag."""
    with tempfile.TemporaryDirectory(prefix="polish-cmd-") as tmpdir:
        runner = CommandRunner(
            command_argv=command_argv,
            workdir=workdir,
            output_path=Path(tmpdir) / "output.log",
            env=env,
        )
        runner.start()

        deadline = time.monotonic() + timeout if timeout is not None else None
        timed_out = False
        cancelled = False
        exit_code: Optional[int] = None

        while exit_code is None:
            exit_code = runner.wait(timeout=POLL_INTERVAL)
            if exit_code is not None:
                break
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                exit_code = runner.kill(grace_period=grace_period)
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                exit_code = runner.kill(grace_period=grace_period)
                break

        return CommandResult(
            exit_code=exit_code,
            output=runner.read_output(),
            timed_out=timed_out,
            cancelled=cancelled,
        )


def shell_argv(command: str) -> list[str]:
    """Wrap a shell command string as argv."""
    return ["/bin/sh", "-c", command]
