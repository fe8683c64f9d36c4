"""Escalating interventions for a stuck run.

Five tiers, cheapest first. Each tier is a plain callable so any rung can be
replaced at construction without touching the Recover stage:

0. rephrase         fixed text, no model call
1. fast suggestion  one short answer from the fast model; next Plan runs on the fast tier
2. backtrack        drop the conversation back to the last known-good checkpoint
3. brain consult    the most capable model looks at the latest screenshot; next Plan uses it
4. force complete   tell the agent to wrap up and emit the completion token
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from .anthropic_client import ModelClient, ModelTier, image_block, text_block
from .capture import Screenshot
from .conversation import Conversation

log = logging.getLogger("runloop.recovery")

TIER_LABELS = ("Rephrase", "Fast-model suggestion", "Backtrack", "Brain consultation", "Force complete")


@dataclass(frozen=True)
class RecoveryRequest:
    command: str
    stuck_reason: str
    iteration: int
    screenshot: Screenshot | None
    completion_token: str
    conversation: Conversation


@dataclass(frozen=True)
class TierResult:
    guidance: str
    planning_tier: ModelTier | None = None
    escalated_to_brain: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    error: str = ""


RecoveryTier = Callable[[RecoveryRequest], TierResult]


REPHRASE_GUIDANCE = (
    "Your previous approach isn't working. Try a completely different method to accomplish the goal. "
    "Do NOT repeat any actions you have already tried. Consider alternative UI paths, keyboard shortcuts, "
    "menu items, or different applications that could achieve the same result."
)

UNDO_GUIDANCE = (
    "Press Escape or Ctrl+Z to undo the last action, dismiss any open menus, dialogs or popups, "
    "then look at the new screenshot and take a different path: the menu bar instead of right-clicking, "
    "keyboard shortcuts instead of mouse clicks, or a completely different starting point."
)

BACKTRACK_GUIDANCE = "The conversation was rolled back to the last point where every action succeeded. " + UNDO_GUIDANCE


def rephrase(_req: RecoveryRequest) -> TierResult:
    return TierResult(guidance=REPHRASE_GUIDANCE)


def backtrack(req: RecoveryRequest) -> TierResult:
    cp = req.conversation.backtrack()
    if cp is None:
        log.info("No checkpoint to backtrack to, sending guidance only")
        return TierResult(guidance=UNDO_GUIDANCE)
    return TierResult(guidance=BACKTRACK_GUIDANCE)


def force_complete(req: RecoveryRequest) -> TierResult:
    return TierResult(
        guidance=(
            f"You have exhausted all recovery strategies. Output {req.completion_token} now "
            "with a summary of what you accomplished and what could not be completed."
        )
    )


class FastSuggestion:
    def __init__(self, model: ModelClient | None, *, max_tokens: int = 512) -> None:
        self._model = model
        self._max_tokens = max_tokens

    def __call__(self, req: RecoveryRequest) -> TierResult:
        if self._model is None:
            return TierResult(guidance=REPHRASE_GUIDANCE, planning_tier=ModelTier.FAST)
        prompt = (
            f'The agent is stuck doing: "{req.command}". Reason: {req.stuck_reason}. '
            "Suggest one specific alternative approach in 2-3 sentences."
        )
        try:
            resp = self._model.send(
                [{"role": "user", "content": [text_block(prompt)]}],
                "You suggest alternative approaches for a stuck desktop automation agent. Be concise.",
                [],
                ModelTier.FAST,
                self._max_tokens,
            )
        except Exception as e:
            log.warning("Fast-model suggestion failed: %s", e)
            return TierResult(guidance=REPHRASE_GUIDANCE, planning_tier=ModelTier.FAST, error=str(e))
        return TierResult(
            guidance=resp.text or REPHRASE_GUIDANCE,
            planning_tier=ModelTier.FAST,
            input_tokens=resp.input_tokens,
            output_tokens=resp.output_tokens,
        )


class BrainConsult:
    def __init__(self, model: ModelClient | None, *, max_tokens: int = 1024) -> None:
        self._model = model
        self._max_tokens = max_tokens

    def __call__(self, req: RecoveryRequest) -> TierResult:
        if self._model is None:
            return TierResult(guidance="", planning_tier=ModelTier.BRAIN, escalated_to_brain=True, error="no model client")
        prompt = (
            f'The agent executing the task "{req.command}" is stuck. Reason: {req.stuck_reason}. '
            f"The agent has completed {req.iteration} iterations so far. "
            "Three cheaper recovery strategies (rephrase, fast suggestion, backtrack) have already been tried. "
            "Look at the current screenshot and assess: 1. What is the current state of the screen? "
            "2. What progress has been made toward the task? "
            "3. Provide 2-3 concise, specific suggestions for what the agent should try."
        )
        content = [text_block(prompt)]
        if req.screenshot is not None:
            content.append(image_block(req.screenshot.png, req.screenshot.media_type))
        try:
            resp = self._model.send(
                [{"role": "user", "content": content}],
                "You are a strategic advisor helping an autonomous desktop agent get unstuck. "
                "Be concise and actionable.",
                [],
                ModelTier.BRAIN,
                self._max_tokens,
            )
        except Exception as e:
            log.warning("Brain consultation failed: %s", e)
            return TierResult(guidance="", planning_tier=ModelTier.BRAIN, escalated_to_brain=True, error=str(e))
        return TierResult(
            guidance=resp.text,
            planning_tier=ModelTier.BRAIN,
            escalated_to_brain=True,
            input_tokens=resp.input_tokens,
            output_tokens=resp.output_tokens,
        )


class RecoveryLadder:
    def __init__(self, tiers: Sequence[RecoveryTier]) -> None:
        if len(tiers) != len(TIER_LABELS):
            raise ValueError(f"recovery ladder needs exactly {len(TIER_LABELS)} tiers, got {len(tiers)}")
        self._tiers = list(tiers)

    @classmethod
    def default(cls, model: ModelClient | None) -> "RecoveryLadder":
        return cls([rephrase, FastSuggestion(model), backtrack, BrainConsult(model), force_complete])

    def replace(self, index: int, tier: RecoveryTier) -> None:
        self._tiers[index] = tier

    def __len__(self) -> int:
        return len(self._tiers)

    def run(self, index: int, req: RecoveryRequest) -> TierResult:
        index = max(0, min(index, len(self._tiers) - 1))
        return self._tiers[index](req)


def tier_label(index: int) -> str:
    if 0 <= index < len(TIER_LABELS):
        return TIER_LABELS[index]
    return f"Unknown ({index})"
