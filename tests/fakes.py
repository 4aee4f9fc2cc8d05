# Copyright (c) Syntropy Systems
"""Test doubles for the scorer, the agent and the plateau judge."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from polish.agent import AgentOutcome, AgentRequest
from polish.errors import MetricRunError
from polish.metrics import MetricReading
from polish.models import AgentEvent, Metric


class FileMetricRunner:
    """Reads each metric's raw value from `<name>` in the working tree.

    A metric named `tests` reads `score.txt` by default; `files` overrides the
    mapping. Missing or unparsable files raise MetricRunError.
    """

    def __init__(self, files: Optional[dict[str, str]] = None) -> None:
        self.files = files or {}
        self.calls: list[tuple[str, Path]] = []

    def run(self, metric: Metric, workdir: Path) -> MetricReading:
        self.calls.append((metric.name, workdir))
        path = workdir / self.files.get(metric.name, "score.txt")
        try:
            text = path.read_text()
            value = float(text.strip())
        except (OSError, ValueError) as e:
            raise MetricRunError(metric.name, f"unreadable {path.name}") from e
        return MetricReading(value=value, output=text)


Action = Callable[[Path], None]


@dataclass
class Turn:
    """One scripted agent call: an optional edit, then a result subtype."""

    action: Optional[Action] = None
    subtype: str = "success"
    text: str = "Working on it"


def write_file(name: str, content: str) -> Action:
    def action(cwd: Path) -> None:
        (cwd / name).write_text(content)

    return action


def set_score(value: float) -> Action:
    return write_file("score.txt", f"{value:g}\n")


@dataclass
class ScriptedCapability:
    """Agent capability replaying a fixed list of turns.

    Calls past the end of the script succeed without touching anything.
    """

    turns: list[Turn] = field(default_factory=list)
    requests: list[AgentRequest] = field(default_factory=list)

    async def stream(self, request: AgentRequest) -> AsyncIterator[Union[AgentEvent, AgentOutcome]]:
        self.requests.append(request)
        turn = self.turns.pop(0) if self.turns else Turn()

        yield AgentEvent(kind="text", message=turn.text)
        if turn.action is not None:
            yield AgentEvent(kind="tool", phase="PreToolUse", tool="Edit", tool_use_id="t1", input={})
            turn.action(Path(request.cwd))
            yield AgentEvent(kind="tool", phase="PostToolUse", tool="Edit", tool_use_id="t1", output="ok")
        yield AgentOutcome(subtype=turn.subtype, session_id=f"sdk-{len(self.requests)}")


class FakeJudge:
    """LLM judge returning canned answers (or raising)."""

    def __init__(self, *answers: Union[str, Exception]) -> None:
        self.answers = list(answers)
        self.contexts: list[str] = []

    def judge(self, context: str) -> str:
        self.contexts.append(context)
        answer = self.answers.pop(0) if self.answers else '{"decision": "continue", "reason": "default"}'
        if isinstance(answer, Exception):
            raise answer
        return answer
