# Copyright (c) Syntropy Systems
"""Decide whether the loop should keep iterating."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Optional, Protocol

from claude_agent_sdk import AssistantMessage, ClaudeAgentOptions, TextBlock, query

if TYPE_CHECKING:
    from polish.config import PolishConfig
    from polish.models import PolishState, ScoreResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_STALLED = 5

PlateauMode = Literal["stalled", "llm"]

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class PlateauDecision:
    should_stop: bool
    reason: str
    detail: str = ""


class LlmJudge(Protocol):
    """Answers a plateau question with raw model text."""

    def judge(self, context: str) -> str: ...


class PlateauDetector(Protocol):
    def decide(self, state: PolishState, current_score: ScoreResult, target: float) -> PlateauDecision: ...


def _target_decision(current_score: ScoreResult, target: float) -> Optional[PlateauDecision]:
    if current_score.score >= target:
        return PlateauDecision(
            should_stop=True,
            reason="target_reached",
            detail=f"Target reached: {current_score.score:.1f} >= {target:g}",
        )
    return None


class StalledPlateauDetector:
    """Stops after `max_stalled` consecutive non-improving iterations."""

    def __init__(self, max_stalled: int = DEFAULT_MAX_STALLED) -> None:
        self.max_stalled = max_stalled

    def decide(self, state: PolishState, current_score: ScoreResult, target: float) -> PlateauDecision:
        reached = _target_decision(current_score, target)
        if reached is not None:
            return reached

        if state.stalled_count >= self.max_stalled:
            return PlateauDecision(
                should_stop=True,
                reason="plateau",
                detail=(
                    f"Plateau detected: {state.stalled_count} consecutive iterations "
                    "without improvement"
                ),
            )
        return PlateauDecision(
            should_stop=False,
            reason="continue",
            detail=f"Continuing: stalled {state.stalled_count}/{self.max_stalled}",
        )


def build_plateau_context(state: PolishState, current_score: ScoreResult, target: float) -> str:
    history = "\n".join(f"  Iteration {i}: {s:.1f}" for i, s in enumerate(state.scores))
    breakdown = "\n".join(
        f"  {m.name}: {m.normalized_score:.1f}/100 (target: {m.target:g}, weight: {m.weight:g})"
        for m in current_score.metrics
    )
    return f"""\
# Polish Session Status

## Current State
- Iteration: {state.iteration}
- Target Score: {target:g}
- Current Score: {current_score.score:.1f}
- Stalled Count: {state.stalled_count}
- Last Improvement: Iteration {state.last_improvement}

## Score History
{history or "  (no history yet)"}

## Current Metric Breakdown
{breakdown}

## Question
Based on this information, should we continue trying to improve the code or stop?
Consider:
- Is there a clear trend of improvement?
- Have we been stuck on the same issues?
- Is the gap to target reasonable to close?

Respond with JSON only:
{{"decision": "continue" | "stop", "reason": "explanation"}}"""


def parse_judgement(text: str) -> Optional[tuple[str, str]]:
    """Extract (decision, reason) from model output, tolerating prose around it."""
    match = _JSON_OBJECT_RE.search(text)
    if match is None:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    decision = data.get("decision")
    if decision not in ("continue", "stop"):
        return None
    return decision, str(data.get("reason", ""))


class LlmPlateauDetector:
    """Delegates the stop/continue call to an LLM judge.

    Falls back to the stalled rule when the judge fails or answers nonsense.
    """

    def __init__(self, judge: LlmJudge, max_stalled: int = DEFAULT_MAX_STALLED) -> None:
        self.judge = judge
        self.fallback = StalledPlateauDetector(max_stalled)

    def decide(self, state: PolishState, current_score: ScoreResult, target: float) -> PlateauDecision:
        reached = _target_decision(current_score, target)
        if reached is not None:
            return reached

        context = build_plateau_context(state, current_score, target)
        try:
            answer = self.judge.judge(context)
        except Exception as e:  # noqa: BLE001
            logger.warning("Plateau judge failed, using stalled rule: %s", e)
            return self.fallback.decide(state, current_score, target)

        parsed = parse_judgement(answer)
        if parsed is None:
            logger.warning("Unparseable plateau judgement, using stalled rule: %r", answer[:200])
            return self.fallback.decide(state, current_score, target)

        decision, reason = parsed
        if decision == "stop":
            return PlateauDecision(should_stop=True, reason="plateau", detail=reason)
        return PlateauDecision(should_stop=False, reason="continue", detail=reason)


class ClaudeJudge:
    """Single-turn, tool-less judgement through claude-agent-sdk."""

    def __init__(self, model: Optional[str] = None) -> None:
        self.model = model

    def judge(self, context: str) -> str:
        return asyncio.run(self._ask(context))

    async def _ask(self, context: str) -> str:
        options = ClaudeAgentOptions(
            system_prompt="You judge whether an automated code polishing loop should stop.",
            allowed_tools=[],
            max_turns=1,
            model=self.model,
        )
        parts: list[str] = []
        async for message in query(prompt=context, options=options):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        parts.append(block.text)
        return "\n".join(parts)


def make_plateau_detector(
    config: PolishConfig,
    judge: Optional[LlmJudge] = None,
) -> PlateauDetector:
    """Build the detector selected by `plateau_detection`."""
    if config.plateau_detection == "llm":
        return LlmPlateauDetector(judge or ClaudeJudge(config.model), config.max_stalled)
    return StalledPlateauDetector(config.max_stalled)


def detect_plateau(
    state: PolishState,
    current_score: ScoreResult,
    target: float,
    mode: PlateauMode = "stalled",
    max_stalled: int = DEFAULT_MAX_STALLED,
    judge: Optional[LlmJudge] = None,
) -> PlateauDecision:
    """One-shot plateau check."""
    if mode == "llm":
        if judge is None:
            judge = ClaudeJudge()
        return LlmPlateauDetector(judge, max_stalled).decide(state, current_score, target)
    return StalledPlateauDetector(max_stalled).decide(state, current_score, target)
