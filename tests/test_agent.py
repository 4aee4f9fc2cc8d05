# Copyright (c) Syntropy Systems
"""Tests for fix agent prompts and invocation."""

import asyncio
import threading
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Union

from fakes import ScriptedCapability, Turn, write_file
from polish.agent import (
    CONTINUE_FIX_PROMPT,
    AgentOutcome,
    AgentRequest,
    FixAgentInvoker,
    FixContext,
    build_fix_prompt,
    build_implement_prompt,
    build_system_prompt,
)
from polish.errors import AgentError, ContinuationExhausted
from polish.models import AgentEvent, FailedAttempt, MetricResult, Strategy


def make_context(path: Path, **kwargs: object) -> FixContext:
    metric = MetricResult(
        name="lint",
        raw_value=12,
        normalized_score=40.0,
        weight=1.0,
        target=0,
        higher_is_better=False,
        output="src/app.py:3: unused import",
    )
    strategy = Strategy(name="lint_fixes", focus="lint", prompt="Fix ONE lint error.")
    return FixContext(project_path=path, strategy=strategy, target_metric=metric, **kwargs)  # type: ignore[arg-type]


class SlowCapability:
    """Emits one event, then works until cancelled."""

    def __init__(self) -> None:
        self.cancelled = threading.Event()

    async def stream(self, request: AgentRequest) -> AsyncIterator[Union[AgentEvent, AgentOutcome]]:
        yield AgentEvent(kind="text", message="thinking")
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            self.cancelled.set()
            raise
        yield AgentOutcome(subtype="success")


class TestPrompts:
    """Tests for prompt construction."""

    def test_fix_prompt_contents(self, temp_dir: Path) -> None:
        prompt = build_fix_prompt(make_context(temp_dir, rules=["Never touch migrations"]))

        assert "You must fix ONE SINGLE problem" in prompt
        assert "**lint**: 12 (score: 40.0/100)" in prompt
        assert "Lower is better" in prompt
        assert "Fix ONE lint error." in prompt
        assert "unused import" in prompt
        assert "- Never touch migrations" in prompt
        assert "Failed Attempts" not in prompt

    def test_fix_prompt_lists_failed_attempts(self, temp_dir: Path) -> None:
        attempts = [
            FailedAttempt(strategy="lint_fixes", focus="lint", file="src/app.py", line=3, reason="no_improvement"),
            FailedAttempt(strategy="lint_fixes", reason="error"),
        ]
        prompt = build_fix_prompt(make_context(temp_dir, failed_attempts=attempts))

        assert "## Failed Attempts (do not repeat)" in prompt
        assert "- lint_fixes [lint] on src/app.py:3 -> no_improvement" in prompt
        assert "- lint_fixes -> error" in prompt

    def test_system_prompt_rules(self) -> None:
        assert "## Rules" not in build_system_prompt([])
        assert "- Keep the public API" in build_system_prompt(["Keep the public API"])

    def test_implement_prompt(self) -> None:
        prompt = build_implement_prompt("Add a search endpoint")

        assert "## Mission\nAdd a search endpoint" in prompt
        assert "polished automatically" in prompt


class TestFixAgentInvoker:
    """Tests for running fixes through a scripted capability."""

    def test_success_streams_events(self, temp_dir: Path) -> None:
        capability = ScriptedCapability([Turn(write_file("fix.py", "x = 1\n"))])
        invoker = FixAgentInvoker(capability, max_turns=7, model="test-model")

        run = invoker.run_single_fix(make_context(temp_dir))
        events = list(run)

        assert run.wait() == "success"
        assert [e.kind for e in events] == ["text", "tool", "tool"]
        assert events[1].phase == "PreToolUse"
        assert events[2].phase == "PostToolUse"
        assert (temp_dir / "fix.py").exists()

        request = capability.requests[0]
        assert request.cwd == str(temp_dir)
        assert request.max_turns == 7
        assert request.model == "test-model"
        assert request.resume is None
        assert "ONE SINGLE" in request.prompt

    def test_no_changes_when_probe_sees_nothing(self, temp_dir: Path) -> None:
        invoker = FixAgentInvoker(ScriptedCapability([Turn()]), change_probe=lambda path: False)

        assert invoker.run_single_fix(make_context(temp_dir)).wait() == "no_changes"

    def test_changes_detected_by_probe(self, temp_dir: Path) -> None:
        probed: list[Path] = []

        def probe(path: Path) -> bool:
            probed.append(path)
            return True

        invoker = FixAgentInvoker(ScriptedCapability([Turn()]), change_probe=probe)

        assert invoker.run_single_fix(make_context(temp_dir)).wait() == "success"
        assert probed == [temp_dir]

    def test_agent_error_subtype(self, temp_dir: Path) -> None:
        invoker = FixAgentInvoker(ScriptedCapability([Turn(subtype="error_during_execution")]))

        run = invoker.run_single_fix(make_context(temp_dir))
        assert run.wait() == "agent_error"
        assert run.error == "Agent stopped: error_during_execution"

    def test_capability_exception_is_agent_error(self, temp_dir: Path) -> None:
        class Broken:
            async def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
                raise ConnectionError("CLI not found")
                yield  # pragma: no cover

        run = FixAgentInvoker(Broken()).run_single_fix(make_context(temp_dir))  # type: ignore[arg-type]

        assert run.wait() == "agent_error"
        assert run.error == "CLI not found"

    def test_stream_without_result_is_agent_error(self, temp_dir: Path) -> None:
        class Silent:
            async def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
                yield AgentEvent(kind="text", message="thinking")

        run = FixAgentInvoker(Silent()).run_single_fix(make_context(temp_dir))  # type: ignore[arg-type]

        assert run.wait() == "agent_error"
        assert run.error == "Agent stream ended without a result"

    def test_domain_errors_map_to_status(self, temp_dir: Path) -> None:
        class Exhausted:
            async def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
                raise ContinuationExhausted("out of turns")
                yield  # pragma: no cover

        run = FixAgentInvoker(Exhausted()).run_single_fix(make_context(temp_dir))  # type: ignore[arg-type]

        assert run.wait() == "continuation_exhausted"
        assert run.error == "out of turns"
        assert issubclass(ContinuationExhausted, AgentError)

    def test_continuation_resumes_session(self, temp_dir: Path) -> None:
        capability = ScriptedCapability([Turn(subtype="error_max_turns"), Turn()])
        invoker = FixAgentInvoker(capability, max_continuations=3)

        run = invoker.run_single_fix(make_context(temp_dir))
        messages = [e.message for e in run if e.kind == "text"]

        assert run.wait() == "success"
        assert "Continuing (1/3)..." in messages
        assert len(capability.requests) == 2
        resumed = capability.requests[1]
        assert resumed.resume == "sdk-1"
        assert resumed.prompt == CONTINUE_FIX_PROMPT

    def test_continuation_exhausted(self, temp_dir: Path) -> None:
        capability = ScriptedCapability([Turn(subtype="error_max_turns") for _ in range(5)])
        invoker = FixAgentInvoker(capability, max_continuations=2)

        run = invoker.run_single_fix(make_context(temp_dir))

        assert run.wait() == "continuation_exhausted"
        assert run.error == "Reached maximum continuations (2)"
        # First call plus two continuations
        assert len(capability.requests) == 3

    def test_run_task_uses_continue_prompt(self, temp_dir: Path) -> None:
        capability = ScriptedCapability([Turn(subtype="error_max_turns"), Turn()])
        invoker = FixAgentInvoker(capability)

        run = invoker.run_task("Implement search", temp_dir, continue_prompt="Keep going.")

        assert run.wait() == "success"
        assert capability.requests[0].prompt == "Implement search"
        assert capability.requests[1].prompt == "Keep going."

    def test_cancel_event_cancels_run(self, temp_dir: Path) -> None:
        capability = SlowCapability()
        cancel = threading.Event()
        run = FixAgentInvoker(capability).run_single_fix(make_context(temp_dir), cancel_event=cancel)

        received = []
        for event in run:
            received.append(event)
            cancel.set()

        assert [e.message for e in received] == ["thinking"]
        assert run.wait() == "cancelled"
        assert run.closed
        assert capability.cancelled.wait(timeout=5.0)

    def test_close_cancels_run(self, temp_dir: Path) -> None:
        capability = SlowCapability()
        run = FixAgentInvoker(capability).run_single_fix(make_context(temp_dir))

        first = next(iter(run))
        run.close()

        assert first.message == "thinking"
        assert run.status == "cancelled"
        assert list(run) == []
