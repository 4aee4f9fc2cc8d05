# Copyright (c) Syntropy Systems
"""Fix agent invocation: prompts, continuation, and the event channel.

The agent runs on its own thread inside an asyncio event loop. Events cross
to the (synchronous) controller through a bounded queue, so a slow consumer
slows the agent down instead of losing events. Closing the run cancels the
producer task, which closes the SDK stream and with it the agent process.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import queue
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Literal, Optional, Protocol, Union

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)

from polish.config import DEFAULT_ALLOWED_TOOLS
from polish.errors import AgentError, ContinuationExhausted
from polish.models import AgentEvent, FailedAttempt, MetricResult, Strategy

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterator, Sequence

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 30
DEFAULT_MAX_CONTINUATIONS = 5
DEFAULT_QUEUE_SIZE = 64

CONTINUE_FIX_PROMPT = "Continue the fix in progress."
CONTINUE_IMPLEMENT_PROMPT = "Continue implementing the remaining features."

FixStatus = Literal["success", "no_changes", "agent_error", "continuation_exhausted", "cancelled"]


@dataclass
class AgentRequest:
    """One call to the agent capability."""

    prompt: str
    system_prompt: str
    cwd: str
    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    max_turns: int = DEFAULT_MAX_TURNS
    resume: Optional[str] = None
    model: Optional[str] = None


@dataclass
class AgentOutcome:
    """Terminal message of one agent call."""

    subtype: str
    session_id: Optional[str] = None
    result: Optional[str] = None


class AgentCapability(Protocol):
    """Streams tool and text events for a prompt, ending with an outcome."""

    def stream(self, request: AgentRequest) -> AsyncIterator[Union[AgentEvent, AgentOutcome]]: ...


class ClaudeAgentCapability:
    """Agent capability backed by claude-agent-sdk."""

    def __init__(
        self,
        permission_mode: str = "acceptEdits",
        env: Optional[dict[str, str]] = None,
    ) -> None:
        self.permission_mode = permission_mode
        self.env = env or {}

    def options(self, request: AgentRequest) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            system_prompt=request.system_prompt,
            allowed_tools=request.allowed_tools,
            max_turns=request.max_turns,
            cwd=request.cwd,
            resume=request.resume,
            model=request.model,
            permission_mode=self.permission_mode,
            env=self.env,
        )

    async def stream(self, request: AgentRequest) -> AsyncIterator[Union[AgentEvent, AgentOutcome]]:
        tool_names: dict[str, str] = {}
        messages = query(prompt=request.prompt, options=self.options(request))
        async with contextlib.aclosing(messages) as stream:
            async for message in stream:
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock):
                            yield AgentEvent(kind="text", message=block.text)
                        elif isinstance(block, ToolUseBlock):
                            tool_names[block.id] = block.name
                            yield AgentEvent(
                                kind="tool",
                                phase="PreToolUse",
                                tool=block.name,
                                tool_use_id=block.id,
                                input=block.input,
                            )
                elif isinstance(message, UserMessage) and isinstance(message.content, list):
                    for block in message.content:
                        if isinstance(block, ToolResultBlock):
                            yield AgentEvent(
                                kind="tool",
                                phase="PostToolUse",
                                tool=tool_names.get(block.tool_use_id),
                                tool_use_id=block.tool_use_id,
                                output=block.content,
                                is_error=bool(block.is_error),
                            )
                elif isinstance(message, ResultMessage):
                    yield AgentOutcome(
                        subtype=message.subtype,
                        session_id=message.session_id,
                        result=message.result,
                    )


@dataclass
class _Final:
    status: FixStatus
    error: Optional[str] = None


Emit = Callable[[AgentEvent], "Awaitable[None]"]
Producer = Callable[[Emit], "Awaitable[tuple[FixStatus, Optional[str]]]"]


class AgentRun:
    """Channel between the agent-driving thread and its consumer.

    Iterate to receive `AgentEvent`s in order. When iteration ends, `status`
    holds the terminal `FixStatus` and `error` any failure message.
    """

    def __init__(
        self,
        producer: Producer,
        cancel_event: Optional[threading.Event] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        name: str = "polish-agent",
    ) -> None:
        self._producer = producer
        self._cancel_event = cancel_event
        self._queue: queue.Queue[Union[AgentEvent, _Final]] = queue.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        self._started = threading.Event()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task[None]] = None

        self.status: Optional[FixStatus] = None
        self.error: Optional[str] = None

        self._thread = threading.Thread(target=self._run_thread, name=name, daemon=True)
        self._thread.start()

    # --- producer side ---

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._main())
        finally:
            self._started.set()

    async def _main(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.current_task()
        self._started.set()

        status: FixStatus
        error: Optional[str] = None
        if self._closed.is_set():
            status = "cancelled"
        else:
            try:
                status, error = await self._producer(self._emit)
            except asyncio.CancelledError:
                status = "cancelled"
            except ContinuationExhausted as e:
                logger.info("Agent run stopped: %s", e)
                status, error = "continuation_exhausted", str(e)
            except AgentError as e:
                logger.warning("Agent run failed: %s", e)
                status, error = "agent_error", str(e)
            except Exception as e:
                logger.exception("Agent run failed")
                status, error = "agent_error", str(e) or type(e).__name__

        self._finish(status, error)

    async def _emit(self, event: AgentEvent) -> None:
        while not self._closed.is_set():
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                await asyncio.sleep(0.05)

    def _finish(self, status: FixStatus, error: Optional[str]) -> None:
        with self._lock:
            if self.status is None:
                self.status = status
                self.error = error
            final = _Final(self.status, self.error)

        while not self._closed.is_set():
            try:
                self._queue.put(final, timeout=0.05)
                return
            except queue.Full:
                continue

    # --- consumer side ---

    def __iter__(self) -> Iterator[AgentEvent]:
        while not self._closed.is_set():
            if self._cancel_event is not None and self._cancel_event.is_set():
                self.close()
                return
            try:
                item = self._queue.get(timeout=0.1)
            except queue.Empty:
                if not self._thread.is_alive() and self._queue.empty():
                    return
                continue
            if isinstance(item, _Final):
                return
            if self._closed.is_set():
                return
            yield item

    def wait(self) -> FixStatus:
        """Drain remaining events and return the terminal status."""
        for _ in self:
            pass
        self._thread.join()
        return self.status or "cancelled"

    def close(self, timeout: float = 30.0) -> None:
        """Cancel the producer. No events are yielded afterwards."""
        if not self._closed.is_set():
            self._closed.set()
            self._started.wait(timeout=5.0)
            loop, task = self._loop, self._task
            if loop is not None and task is not None:
                # Loop may already be closed if the producer just finished
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(task.cancel)

        self._thread.join(timeout)
        with self._lock:
            if self.status is None:
                self.status = "cancelled"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()


# --- Prompts ---

@dataclass
class FixContext:
    """Everything the agent needs for one fix attempt."""

    project_path: Path
    strategy: Strategy
    target_metric: MetricResult
    failed_attempts: list[FailedAttempt] = field(default_factory=list)
    rules: list[str] = field(default_factory=list)


def _format_attempt(attempt: FailedAttempt) -> str:
    location = ""
    if attempt.file:
        location = f" on {attempt.file}"
        if attempt.line is not None:
            location += f":{attempt.line}"
    focus = f" [{attempt.focus}]" if attempt.focus else ""
    return f"- {attempt.strategy}{focus}{location} -> {attempt.reason}"


def build_fix_prompt(context: FixContext) -> str:
    metric = context.target_metric
    raw = "unavailable" if metric.raw_value is None else f"{metric.raw_value:g}"
    direction = (
        "Higher is better: increase this value"
        if metric.higher_is_better
        else "Lower is better: reduce this value"
    )

    lines = [
        "You must fix ONE SINGLE problem in this codebase.",
        "",
        "## Metric to Improve",
        f"- **{metric.name}**: {raw} (score: {metric.normalized_score:.1f}/100)",
        f"- Target: {metric.target:g}",
        f"- {direction}",
    ]
    if metric.error:
        lines.append(f"- Last run failed: {metric.error}")

    lines += ["", "## Your Task", context.strategy.prompt]

    if metric.output:
        lines += ["", "## Current Output", "```", metric.output.strip()[-2000:], "```"]

    lines += ["", "## Strict Rules"]
    lines += [f"- {rule}" for rule in context.rules]
    lines += [
        "- ONE SINGLE atomic change",
        "- Verify the metric after the modification",
    ]

    if context.failed_attempts:
        lines += ["", "## Failed Attempts (do not repeat)"]
        lines += [_format_attempt(a) for a in context.failed_attempts]

    lines += ["", "Start by analyzing the problem, then apply the fix."]
    return "\n".join(lines)


def build_system_prompt(rules: Sequence[str]) -> str:
    lines = [
        "You are an expert code quality improvement agent.",
        "",
        "## Your Approach",
        "1. **Analyze** - Use diagnostic commands (tests, lint, type checks)",
        "2. **Identify** - Find the specific problem to fix",
        "3. **Fix** - Apply ONE SINGLE minimal fix",
        "4. **Verify** - Confirm the fix works",
    ]
    if rules:
        lines += ["", "## Rules"]
        lines += [f"- {rule}" for rule in rules]
    lines += [
        "",
        "## Available Tools",
        "- Glob: find files by pattern",
        "- Grep: search text in files",
        "- Read: read a file",
        "- Edit: modify a file (preferred)",
        "- Write: create a new file",
        "- Bash: run commands (tests, linters, type checkers)",
        "",
        "## Important",
        "- Prefer Edit over Write for modifying existing files",
        "- Don't modify config files without reason",
        "- One single atomic change per session",
    ]
    return "\n".join(lines)


def build_implement_prompt(mission: str, rules: Sequence[str] = ()) -> str:
    lines = [
        "You need to implement the following feature in this project:",
        "",
        "## Mission",
        mission,
        "",
        "## Instructions",
        "1. First, explore the project with Glob and Read to understand its structure,",
        "   its conventions, and the files to modify or create.",
        "2. Then implement the feature, creating files with Write and modifying",
        "   existing ones with Edit. The code must not have syntax errors.",
        "3. The code can be imperfect: it will be polished automatically afterwards.",
    ]
    if rules:
        lines += ["", "## Rules"]
        lines += [f"- {rule}" for rule in rules]
    lines += [
        "",
        "## Important",
        "- Follow the existing project conventions",
        "- Prefer Edit over Write for modifying existing files",
        "- Don't touch config files without reason",
        "",
        "Start by exploring the project, then implement the feature.",
    ]
    return "\n".join(lines)


IMPLEMENT_SYSTEM_PROMPT = """\
You are an expert developer. Your mission is to implement a feature in an existing project.

## Your Approach
1. **Explore** - Understand the project, its structure, its patterns
2. **Plan** - Identify files to create or modify
3. **Implement** - Write the necessary code
4. **Verify** - Make sure the code runs

## Rules
- Follow project conventions
- Warnings and incomplete types are acceptable
- Prefer incremental changes"""


# --- Invoker ---

class FixAgentInvoker:
    """Runs agent calls with bounded turns and automatic continuation."""

    def __init__(
        self,
        capability: Optional[AgentCapability] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        max_continuations: int = DEFAULT_MAX_CONTINUATIONS,
        allowed_tools: Optional[list[str]] = None,
        model: Optional[str] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        change_probe: Optional[Callable[[Path], bool]] = None,
    ) -> None:
        self.capability = capability if capability is not None else ClaudeAgentCapability()
        self.max_turns = max_turns
        self.max_continuations = max_continuations
        self.allowed_tools = allowed_tools or list(DEFAULT_ALLOWED_TOOLS)
        self.model = model
        self.queue_size = queue_size
        self.change_probe = change_probe

    def run_single_fix(
        self,
        context: FixContext,
        cancel_event: Optional[threading.Event] = None,
    ) -> AgentRun:
        """Start one fix attempt and return its event channel."""
        request = AgentRequest(
            prompt=build_fix_prompt(context),
            system_prompt=build_system_prompt(context.rules),
            cwd=str(context.project_path),
            allowed_tools=self.allowed_tools,
            max_turns=self.max_turns,
            model=self.model,
        )
        return self._start(request, CONTINUE_FIX_PROMPT, cancel_event, "polish-fix")

    def run_task(
        self,
        prompt: str,
        project_path: Path,
        system_prompt: str = IMPLEMENT_SYSTEM_PROMPT,
        cancel_event: Optional[threading.Event] = None,
        continue_prompt: str = CONTINUE_IMPLEMENT_PROMPT,
    ) -> AgentRun:
        """Start a free-form task (the implement phase) on the same machinery."""
        request = AgentRequest(
            prompt=prompt,
            system_prompt=system_prompt,
            cwd=str(project_path),
            allowed_tools=self.allowed_tools,
            max_turns=self.max_turns,
            model=self.model,
        )
        return self._start(request, continue_prompt, cancel_event, "polish-task")

    def _start(
        self,
        request: AgentRequest,
        continue_prompt: str,
        cancel_event: Optional[threading.Event],
        name: str,
    ) -> AgentRun:
        async def produce(emit: Emit) -> tuple[FixStatus, Optional[str]]:
            return await self._drive(request, continue_prompt, emit)

        return AgentRun(produce, cancel_event=cancel_event, queue_size=self.queue_size, name=name)

    async def _drive(
        self,
        request: AgentRequest,
        continue_prompt: str,
        emit: Emit,
    ) -> tuple[FixStatus, Optional[str]]:
        continuations = 0
        current = request

        while True:
            outcome: Optional[AgentOutcome] = None
            async with contextlib.aclosing(self.capability.stream(current)) as stream:
                async for item in stream:
                    if isinstance(item, AgentOutcome):
                        outcome = item
                        break
                    await emit(item)

            if outcome is None:
                msg = "Agent stream ended without a result"
                raise AgentError(msg)

            if outcome.subtype == "error_max_turns":
                if continuations >= self.max_continuations:
                    msg = f"Reached maximum continuations ({self.max_continuations})"
                    raise ContinuationExhausted(msg)
                continuations += 1
                await emit(
                    AgentEvent(
                        kind="text",
                        message=f"Continuing ({continuations}/{self.max_continuations})...",
                    )
                )
                current = replace(request, prompt=continue_prompt, resume=outcome.session_id)
                continue

            if outcome.subtype != "success":
                msg = f"Agent stopped: {outcome.subtype}"
                raise AgentError(msg)

            if self.change_probe is not None and not self.change_probe(Path(request.cwd)):
                return "no_changes", None
            return "success", None
