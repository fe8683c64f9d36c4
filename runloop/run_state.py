"""Shared state for a single agent run.

One ``RunState`` exists per run. The loop driver, the tool-execution path
and side-channel callbacks on other threads all reach it, so every read and
every mutation happens under one re-entrant lock. Fields are read through
properties and written only through the named mutators below; there are no
public setters.

Ownership of writes:

- Perceive / Observe: captures, UI summary, diff description, capture flags
- Plan: model response and the flags derived from it, token totals
- Act: tool-call summaries, lifetime tool flags, last action/tool, capture counter
- Evaluate / Recover: completion, stuck, recovery counters and tier, error class
- Complete: verification result, rejection counter, verification tokens
- Orchestrator: iteration counter, error and cancellation terminal flags
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

from .anthropic_client import ModelResponse, ModelTier
from .capture import Screenshot
from .error_classifier import ErrorClass

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_MAX_REJECTED_COMPLETIONS = 2
DEFAULT_MAX_RECOVERY_ATTEMPTS = 5
DEFAULT_MAX_TOTAL_RECOVERY_ATTEMPTS = 8
RECOVERY_TIER_COUNT = 5
SUMMARY_TEXT_LIMIT = 500

# Cleared by reset_for_new_iteration(). last_action_type, last_tool_name and
# consecutive_screenshots_without_action are absent: Perceive
# needs them from the previous iteration.
PER_ITERATION_FIELDS = (
    "model_response",
    "has_tool_calls",
    "has_more_work",
    "text_content",
    "tool_call_summaries",
    "has_visual_tool_calls",
    "failed_tool_count",
    "post_capture",
    "ui_tree_summary",
    "adaptive_skipped_screenshot",
    "visual_diff_description",
    "screenshots_identical",
    "ax_verification_succeeded",
)


@dataclass(frozen=True)
class ToolCallSummary:
    tool_name: str
    result_text: str
    is_error: bool
    tool_use_id: str = ""

    @classmethod
    def of(cls, tool_name: str, result_text: str, is_error: bool, tool_use_id: str = "") -> "ToolCallSummary":
        return cls(
            tool_name=tool_name,
            result_text=(result_text or "")[:SUMMARY_TEXT_LIMIT],
            is_error=is_error,
            tool_use_id=tool_use_id,
        )


@dataclass(frozen=True)
class Snapshot:
    """Value copy of a run for logging; holds no reference into the live state."""

    run_id: str
    command: str
    iteration: int
    max_iterations: int
    task_complete: bool
    completion_source: str
    is_stuck: bool
    stuck_reason: str
    has_tool_calls: bool
    has_error: bool
    error_message: str
    is_cancelled: bool
    verification_score: int
    verification_passed: bool
    verification_reason: str
    total_input_tokens: int
    total_output_tokens: int
    verification_input_tokens: int
    verification_output_tokens: int
    recovery_attempts: int
    total_recovery_attempts: int
    recovery_strategy_index: int
    rejected_completions: int

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class _guarded:
    """Read-only view of ``_<name>`` taken under the owner's lock."""

    def __set_name__(self, owner: type, name: str) -> None:
        self._field = "_" + name

    def __get__(self, obj: Any, objtype: type | None = None) -> Any:
        if obj is None:
            return self
        with obj._lock:
            return getattr(obj, self._field)


class RunState:
    # ── run identity ────────────────────────────────────────────────────────
    run_id = _guarded()
    command = _guarded()
    completion_token = _guarded()
    source = _guarded()
    start_time = _guarded()

    # ── iteration ───────────────────────────────────────────────────────────
    iteration = _guarded()
    max_iterations = _guarded()

    # ── perception ──────────────────────────────────────────────────────────
    pre_capture = _guarded()
    post_capture = _guarded()
    ui_tree_summary = _guarded()
    visual_diff_description = _guarded()
    screenshot_available = _guarded()
    screenshots_identical = _guarded()
    ax_verification_succeeded = _guarded()
    adaptive_skipped_screenshot = _guarded()
    memory_context = _guarded()
    last_memory_refresh_iteration = _guarded()

    # ── planning ────────────────────────────────────────────────────────────
    model_response = _guarded()
    has_tool_calls = _guarded()
    has_more_work = _guarded()
    text_content = _guarded()
    total_input_tokens = _guarded()
    total_output_tokens = _guarded()

    # ── action ──────────────────────────────────────────────────────────────
    tool_call_summaries = _guarded()
    has_visual_tool_calls = _guarded()
    failed_tool_count = _guarded()
    any_tool_calls_executed = _guarded()
    any_tool_calls_succeeded = _guarded()
    any_visual_tool_calls_executed = _guarded()
    last_action_type = _guarded()
    last_tool_name = _guarded()
    consecutive_screenshots_without_action = _guarded()

    # ── evaluation / recovery ───────────────────────────────────────────────
    task_complete = _guarded()
    completion_source = _guarded()
    completion_forced = _guarded()
    is_stuck = _guarded()
    stuck_reason = _guarded()
    has_escalated_to_brain = _guarded()
    recovery_attempts = _guarded()
    total_recovery_attempts = _guarded()
    max_recovery_attempts = _guarded()
    max_total_recovery_attempts = _guarded()
    recovery_strategy_index = _guarded()
    planning_tier = _guarded()
    last_error_class = _guarded()

    # ── verification ────────────────────────────────────────────────────────
    verification_score = _guarded()
    verification_passed = _guarded()
    verification_reason = _guarded()
    rejected_completions = _guarded()
    max_rejected_completions = _guarded()
    verification_input_tokens = _guarded()
    verification_output_tokens = _guarded()

    # ── terminal ────────────────────────────────────────────────────────────
    has_error = _guarded()
    error_message = _guarded()
    is_cancelled = _guarded()

    def __init__(
        self,
        command: str,
        *,
        completion_token: str = "<task_complete/>",
        source: str = "chat",
        run_id: str | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_rejected_completions: int = DEFAULT_MAX_REJECTED_COMPLETIONS,
        max_recovery_attempts: int = DEFAULT_MAX_RECOVERY_ATTEMPTS,
        max_total_recovery_attempts: int = DEFAULT_MAX_TOTAL_RECOVERY_ATTEMPTS,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._lock = threading.RLock()

        self._run_id = run_id or uuid.uuid4().hex[:12]
        self._command = command
        self._completion_token = completion_token
        self._source = source
        self._start_time = time.time()

        self._iteration = 0
        self._max_iterations = max_iterations

        self._pre_capture: Screenshot | None = None
        self._post_capture: Screenshot | None = None
        self._ui_tree_summary = ""
        self._visual_diff_description = ""
        self._screenshot_available = True
        self._screenshots_identical = False
        self._ax_verification_succeeded = False
        self._adaptive_skipped_screenshot = False
        self._memory_context = ""
        self._last_memory_refresh_iteration: int | None = None

        self._model_response: ModelResponse | None = None
        self._has_tool_calls = False
        self._has_more_work = False
        self._text_content = ""
        self._total_input_tokens = 0
        self._total_output_tokens = 0

        self._tool_call_summaries: tuple[ToolCallSummary, ...] = ()
        self._has_visual_tool_calls = False
        self._failed_tool_count = 0
        self._any_tool_calls_executed = False
        self._any_tool_calls_succeeded = False
        self._any_visual_tool_calls_executed = False
        self._last_action_type = ""
        self._last_tool_name = ""
        self._consecutive_screenshots_without_action = 0

        self._task_complete = False
        self._completion_source = ""
        self._completion_forced = False
        self._is_stuck = False
        self._stuck_reason = ""
        self._has_escalated_to_brain = False
        self._recovery_attempts = 0
        self._total_recovery_attempts = 0
        self._max_recovery_attempts = max_recovery_attempts
        self._max_total_recovery_attempts = max_total_recovery_attempts
        self._recovery_strategy_index = 0
        self._planning_tier = ModelTier.SMART
        self._last_error_class = ErrorClass.NONE

        self._verification_score = 0
        self._verification_passed = False
        self._verification_reason = ""
        self._rejected_completions = 0
        self._max_rejected_completions = max_rejected_completions
        self._verification_input_tokens = 0
        self._verification_output_tokens = 0

        self._has_error = False
        self._error_message = ""
        self._is_cancelled = False

    # ── iteration ───────────────────────────────────────────────────────────

    def increment_iteration(self) -> int:
        with self._lock:
            if self._iteration >= self._max_iterations:
                raise RuntimeError(
                    f"iteration budget exhausted ({self._iteration}/{self._max_iterations})"
                )
            self._iteration += 1
            return self._iteration

    def iteration_budget_exhausted(self) -> bool:
        with self._lock:
            return self._iteration >= self._max_iterations

    def reset_for_new_iteration(self) -> None:
        with self._lock:
            self._model_response = None
            self._has_tool_calls = False
            self._has_more_work = False
            self._text_content = ""
            self._tool_call_summaries = ()
            self._has_visual_tool_calls = False
            self._failed_tool_count = 0
            self._post_capture = None
            self._ui_tree_summary = ""
            self._adaptive_skipped_screenshot = False
            self._visual_diff_description = ""
            self._screenshots_identical = False
            self._ax_verification_succeeded = False

    # ── perception ──────────────────────────────────────────────────────────

    def set_pre_capture(self, shot: Screenshot | None) -> None:
        with self._lock:
            self._pre_capture = shot

    def set_post_capture(self, shot: Screenshot | None) -> None:
        with self._lock:
            self._post_capture = shot

    def set_ui_tree_summary(self, summary: str) -> None:
        with self._lock:
            self._ui_tree_summary = summary or ""

    def set_screenshot_available(self, available: bool) -> None:
        with self._lock:
            self._screenshot_available = bool(available)

    def set_adaptive_skipped_screenshot(self, skipped: bool) -> None:
        with self._lock:
            self._adaptive_skipped_screenshot = bool(skipped)

    def set_visual_diff(self, description: str, identical: bool) -> None:
        with self._lock:
            self._visual_diff_description = description
            self._screenshots_identical = bool(identical)

    def set_ax_verification_succeeded(self, succeeded: bool) -> None:
        with self._lock:
            self._ax_verification_succeeded = bool(succeeded)

    def increment_consecutive_screenshots(self) -> int:
        with self._lock:
            self._consecutive_screenshots_without_action += 1
            return self._consecutive_screenshots_without_action

    # ── planning ────────────────────────────────────────────────────────────

    def set_memory_context(self, context: str, *, at_iteration: int) -> None:
        with self._lock:
            self._memory_context = context
            self._last_memory_refresh_iteration = at_iteration

    def set_model_response(self, response: ModelResponse | None) -> None:
        """Store the model response together with the flags derived from it.

        The previous Act batch belongs to the previous response, so its
        summaries, visual flag and failure count are cleared here. Sticky
        lifetime flags are left alone.
        """
        with self._lock:
            self._model_response = response
            self._tool_call_summaries = ()
            self._has_visual_tool_calls = False
            self._failed_tool_count = 0
            if response is not None:
                self._has_tool_calls = response.has_tool_use
                self._text_content = response.text
                self._has_more_work = response.has_tool_use
            else:
                self._has_tool_calls = False
                self._text_content = ""
                self._has_more_work = False

    def add_tokens(self, *, input_tokens: int, output_tokens: int) -> None:
        with self._lock:
            self._total_input_tokens += int(input_tokens)
            self._total_output_tokens += int(output_tokens)

    # ── action ──────────────────────────────────────────────────────────────

    def set_tool_call_results(self, summaries: list[ToolCallSummary] | tuple[ToolCallSummary, ...], *, has_visual: bool) -> None:
        """Store a batch of tool results.

        The lifetime flags only ever move from False to True; an empty batch
        leaves them as they were.
        """
        with self._lock:
            batch = tuple(summaries)
            self._tool_call_summaries = batch
            self._has_visual_tool_calls = bool(has_visual)
            self._failed_tool_count = sum(1 for s in batch if s.is_error)
            succeeded = len(batch) - self._failed_tool_count
            if batch:
                self._any_tool_calls_executed = True
            if succeeded > 0:
                self._any_tool_calls_succeeded = True
            if has_visual:
                self._any_visual_tool_calls_executed = True

    def set_last_action(self, *, action_type: str, tool_name: str) -> None:
        with self._lock:
            self._last_action_type = action_type
            self._last_tool_name = tool_name

    def reset_consecutive_screenshots(self) -> None:
        with self._lock:
            self._consecutive_screenshots_without_action = 0

    # ── evaluation / recovery ───────────────────────────────────────────────

    def mark_complete(self, source: str, *, forced: bool = False) -> None:
        with self._lock:
            self._task_complete = True
            self._completion_source = source
            self._completion_forced = bool(forced)

    def clear_completion(self) -> None:
        with self._lock:
            self._task_complete = False
            self._completion_source = ""
            self._completion_forced = False

    def mark_stuck(self, reason: str) -> None:
        with self._lock:
            self._is_stuck = True
            self._stuck_reason = reason

    def clear_stuck(self) -> None:
        with self._lock:
            self._is_stuck = False
            self._stuck_reason = ""

    def set_last_error_class(self, cls: ErrorClass) -> None:
        with self._lock:
            self._last_error_class = ErrorClass(cls)

    def recovery_budget_exhausted(self) -> bool:
        with self._lock:
            return (
                self._recovery_attempts >= self._max_recovery_attempts
                or self._total_recovery_attempts >= self._max_total_recovery_attempts
            )

    def increment_recovery_attempts(self) -> int:
        """Advance episode and lifetime counters together; returns the episode count."""
        with self._lock:
            self._recovery_attempts += 1
            self._total_recovery_attempts += 1
            return self._recovery_attempts

    def advance_recovery_strategy(self) -> int:
        with self._lock:
            self._recovery_strategy_index = min(self._recovery_strategy_index + 1, RECOVERY_TIER_COUNT - 1)
            return self._recovery_strategy_index

    def set_planning_tier(self, tier: ModelTier) -> None:
        with self._lock:
            self._planning_tier = ModelTier(tier)

    def set_escalated_to_brain(self, value: bool) -> None:
        with self._lock:
            self._has_escalated_to_brain = bool(value)

    def resolve_recovery_episode(self) -> bool:
        """End the current stuck episode. The lifetime counter is untouched.

        Returns True when there was an episode to resolve.
        """
        with self._lock:
            active = (
                self._recovery_strategy_index > 0
                or self._recovery_attempts > 0
                or self._planning_tier is not ModelTier.SMART
                or self._has_escalated_to_brain
            )
            self._recovery_strategy_index = 0
            self._recovery_attempts = 0
            self._planning_tier = ModelTier.SMART
            self._has_escalated_to_brain = False
            return active

    # ── verification ────────────────────────────────────────────────────────

    def set_verification_result(self, *, score: int, passed: bool, reason: str) -> None:
        with self._lock:
            self._verification_score = int(score)
            self._verification_passed = bool(passed)
            self._verification_reason = reason

    def add_verification_tokens(self, *, input_tokens: int, output_tokens: int) -> None:
        with self._lock:
            self._verification_input_tokens += int(input_tokens)
            self._verification_output_tokens += int(output_tokens)

    def increment_rejected_completions(self) -> bool:
        """Count one rejection; True once the configured maximum is reached."""
        with self._lock:
            self._rejected_completions += 1
            return self._rejected_completions >= self._max_rejected_completions

    # ── terminal ────────────────────────────────────────────────────────────

    def mark_error(self, message: str) -> None:
        with self._lock:
            self._has_error = True
            self._error_message = message

    def mark_cancelled(self) -> None:
        with self._lock:
            self._is_cancelled = True

    # ── snapshot ────────────────────────────────────────────────────────────

    def snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                run_id=self._run_id,
                command=self._command,
                iteration=self._iteration,
                max_iterations=self._max_iterations,
                task_complete=self._task_complete,
                completion_source=self._completion_source,
                is_stuck=self._is_stuck,
                stuck_reason=self._stuck_reason,
                has_tool_calls=self._has_tool_calls,
                has_error=self._has_error,
                error_message=self._error_message,
                is_cancelled=self._is_cancelled,
                verification_score=self._verification_score,
                verification_passed=self._verification_passed,
                verification_reason=self._verification_reason,
                total_input_tokens=self._total_input_tokens,
                total_output_tokens=self._total_output_tokens,
                verification_input_tokens=self._verification_input_tokens,
                verification_output_tokens=self._verification_output_tokens,
                recovery_attempts=self._recovery_attempts,
                total_recovery_attempts=self._total_recovery_attempts,
                recovery_strategy_index=self._recovery_strategy_index,
                rejected_completions=self._rejected_completions,
            )
