from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from .anthropic_client import ModelClient, ModelTier, image_block, text_block
from .capture import Screenshot
from .run_state import ToolCallSummary
from .visual_diff import screen_similarity

log = logging.getLogger("runloop.verifier")

DEFAULT_THRESHOLD = 60
NEUTRAL_SCORE = 50

VERIFY_SYSTEM_PROMPT = """\
You are a strict verifier for a desktop automation command.

You will be given:
- The original user command (text)
- The agent's final message
- A screenshot taken before the agent acted (when available) and one taken now

Decide how far the command is actually achieved in the current screenshot.

Score 0-100 where:
- 100 = fully complete, screen shows expected result
- 80+ = mostly complete, minor issues
- 40-79 = partial progress, needs more work
- 0-39 = no progress or wrong state

Return ONLY a JSON object (no markdown, no code fences, no extra text):
{"score": N, "reason": "brief explanation"}

Rules:
- Be conservative. Do not assume actions succeeded unless the UI clearly shows the result.
"""

_SUCCESS_WORDS = (
    "completed", "done", "created", "saved", "success", "opened", "launched",
    "navigated", "typed", "clicked", "pressed", "scrolled", "sent", "finished",
    "updated", "found", "loaded", "copied", "pasted", "deleted", "closed", "ok",
)

_FAILURE_WORDS = (
    "error", "failed", "not found", "couldn't", "cannot", "unable", "denied",
    "permission", "timeout", "timed out", "crash", "exception", "invalid",
    "missing", "refused", "rejected", "unauthorized", "forbidden", "aborted",
    "does not exist", "fatal",
)


@dataclass(frozen=True)
class VerificationResult:
    score: int
    passed: bool
    reason: str
    input_tokens: int = 0
    output_tokens: int = 0
    method: str = "model"


class Verifier(Protocol):
    def verify(
        self,
        *,
        command: str,
        text_content: str,
        pre_capture: Screenshot | None,
        post_capture: Screenshot | None,
        tool_results: Sequence[ToolCallSummary],
        threshold: int,
    ) -> VerificationResult: ...


class VisionVerifier:
    """Scores the post-action screen with a model; heuristics when the model fails."""

    def __init__(
        self,
        model: ModelClient,
        *,
        tier: ModelTier = ModelTier.FAST,
        max_tokens: int = 300,
    ) -> None:
        self._model = model
        self._tier = tier
        self._max_tokens = max_tokens

    def verify(
        self,
        *,
        command: str,
        text_content: str,
        pre_capture: Screenshot | None,
        post_capture: Screenshot | None,
        tool_results: Sequence[ToolCallSummary],
        threshold: int = DEFAULT_THRESHOLD,
    ) -> VerificationResult:
        if post_capture is None:
            log.info("No post screenshot, returning neutral score")
            return VerificationResult(
                score=NEUTRAL_SCORE,
                passed=NEUTRAL_SCORE >= threshold,
                reason="No screenshot available for verification",
                method="neutral",
            )

        payload: dict[str, Any] = {
            "original_command": command,
            "agent_final_message": (text_content or "")[:1000],
            "tool_errors": sum(1 for r in tool_results if r.is_error),
            "tool_calls": len(tool_results),
        }
        content: list[dict[str, Any]] = [
            text_block("Verify whether the command has been achieved.\nContext:\n" + json.dumps(payload, ensure_ascii=True))
        ]
        if pre_capture is not None:
            content.append(text_block("Before:"))
            content.append(image_block(pre_capture.png, pre_capture.media_type))
        content.append(text_block("Now:"))
        content.append(image_block(post_capture.png, post_capture.media_type))

        try:
            resp = self._model.send(
                [{"role": "user", "content": content}],
                VERIFY_SYSTEM_PROMPT,
                [],
                self._tier,
                self._max_tokens,
            )
        except Exception as e:
            log.warning("Verification model call failed, using heuristics: %s", e)
            return heuristic_verify(
                command=command,
                text_content=text_content,
                pre_capture=pre_capture,
                post_capture=post_capture,
                tool_results=tool_results,
                threshold=threshold,
            )

        score, reason = parse_verification_response(resp.text)
        log.info("Verification score=%d reason=%s", score, reason)
        return VerificationResult(
            score=score,
            passed=score >= threshold,
            reason=reason,
            input_tokens=resp.input_tokens,
            output_tokens=resp.output_tokens,
        )


def parse_verification_response(text: str) -> tuple[int, str]:
    """Extract (score, reason); unparseable answers score neutral."""
    try:
        obj = _loads_first_json_object(text)
    except ValueError:
        return NEUTRAL_SCORE, "Could not parse verification response"
    if not isinstance(obj, dict):
        return NEUTRAL_SCORE, "Could not parse verification JSON"

    raw = obj.get("score")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        score = NEUTRAL_SCORE
    else:
        score = max(0, min(100, int(round(raw))))
    reason = _coerce_str(obj.get("reason")) or "No reason provided"
    return score, reason


def heuristic_verify(
    *,
    command: str,
    text_content: str,
    pre_capture: Screenshot | None,
    post_capture: Screenshot | None,
    tool_results: Sequence[ToolCallSummary],
    threshold: int = DEFAULT_THRESHOLD,
) -> VerificationResult:
    visual = _visual_score(pre_capture, post_capture)
    output = _output_score(text_content, tool_results)
    score = max(0, min(100, int(round(visual * 0.5 + output * 0.5))))

    errors = sum(1 for r in tool_results if r.is_error)
    reason = "Heuristic fallback (model unavailable)"
    if errors:
        reason += f", {errors} tool error(s) detected"
    log.info("Heuristic verification visual=%d output=%d -> %d", visual, output, score)
    return VerificationResult(score=score, passed=score >= threshold, reason=reason, method="heuristic")


def _visual_score(pre: Screenshot | None, post: Screenshot | None) -> int:
    if pre is None or post is None:
        return NEUTRAL_SCORE
    change = 1.0 - screen_similarity(pre.png, post.png)
    if change < 0.001:
        return 10
    if change < 0.01:
        return 40
    if change < 0.05:
        return 70
    if change < 0.15:
        return 90
    return 100


def _output_score(text_content: str, tool_results: Sequence[ToolCallSummary]) -> int:
    if tool_results:
        errors = sum(1 for r in tool_results if r.is_error)
        if errors:
            return 10 if errors / len(tool_results) >= 0.5 else 35

    lower = (text_content or "").lower()
    if not lower:
        return NEUTRAL_SCORE
    successes = sum(1 for w in _SUCCESS_WORDS if _has_word(lower, w))
    failures = sum(1 for w in _FAILURE_WORDS if _has_word(lower, w))
    if not successes and not failures:
        return NEUTRAL_SCORE
    if not failures:
        return 95 if successes >= 3 else 85 if successes == 2 else 75
    if not successes:
        return 15
    return 40 if failures >= successes else 60


def _has_word(text: str, word: str) -> bool:
    return re.search(r"\b" + re.escape(word) + r"\b", text) is not None


def _coerce_str(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, str):
        return v.strip()
    return str(v).strip()


def _strip_code_fences(s: str) -> str:
    s = s.strip()
    if s.startswith("```"):
        lines = s.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        s = "\n".join(lines).strip()
    return s


def _loads_first_json_object(text: str) -> Any:
    s = _strip_code_fences(text or "").strip()
    if not s:
        raise ValueError("Empty model response")
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        pass
    start = s.find("{")
    end = s.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise ValueError("Could not find JSON object in model response")
    try:
        return json.loads(s[start : end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse JSON: {e}") from e
