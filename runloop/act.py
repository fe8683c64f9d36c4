from __future__ import annotations

import logging
from typing import Any

from .anthropic_client import ToolUse
from .error_classifier import ErrorClass, classify, classify_summaries, classify_tool_error
from .errors import RunCancelled
from .events import LifecycleState
from .run_state import RunState, ToolCallSummary
from .stages import StageContext, StageId
from .tools import ToolExecutor, ToolResult, classify_action_type, is_visual_tool

log = logging.getLogger("runloop.act")

STUCK_TOOL_REASON = "Tool errors indicate stuck state"
SKIPPED_RESULT = "skipped: run cancelled before this call"


class ActStage:
    """Execute the requested tool calls one at a time.

    A transient failure gets exactly one retry after a short pause; anything
    else is recorded and the batch moves on. A batch that classifies as
    stuck marks the run stuck so the loop goes to Recover.
    """

    stage_id = StageId.ACT

    def __init__(self, ctx: StageContext) -> None:
        self._ctx = ctx

    def execute(self, state: RunState) -> None:
        ctx = self._ctx
        ctx.check_cancelled(state, self.stage_id)

        response = state.model_response
        if not state.has_tool_calls or response is None:
            log.info("No tool calls, skipping execution")
            return

        executor: ToolExecutor = ctx.require("tool_executor", self.stage_id)
        ctx.callbacks.state(LifecycleState.EXECUTING)

        iteration = state.iteration
        tool_uses = list(response.tool_uses)
        log.info("Executing %d tool calls for iteration %d", len(tool_uses), iteration)

        summaries: list[ToolCallSummary] = []
        full_results: list[ToolCallSummary] = []
        has_visual = False
        skipped: list[ToolUse] = []
        for i, use in enumerate(tool_uses):
            if state.is_cancelled or ctx.kill_switch.triggered:
                state.mark_cancelled()
                skipped = tool_uses[i:]
                log.warning("Cancelled before %s, skipping %d remaining call(s)", use.name, len(skipped))
                break
            if is_visual_tool(use.name):
                has_visual = True
            full = self._run_call(executor, use)
            full_results.append(full)
            summaries.append(ToolCallSummary.of(full.tool_name, full.result_text, full.is_error, full.tool_use_id))

        state.set_tool_call_results(summaries, has_visual=has_visual)

        batch_class = classify_summaries(summaries)
        if batch_class is ErrorClass.STUCK:
            state.mark_stuck(STUCK_TOOL_REASON)
            log.warning("Batch error class is stuck, escalating to recovery")
        elif batch_class is not ErrorClass.NONE:
            log.info("Batch error class: %s", batch_class.value)

        if summaries:
            last = summaries[-1]
            last_use = tool_uses[len(summaries) - 1]
            state.set_last_action(
                action_type=classify_action_type(last.tool_name, last_use.input),
                tool_name=last.tool_name,
            )
        state.reset_consecutive_screenshots()

        # The model gets the full result text; RunState keeps the truncated form.
        ctx.conversation.add_tool_results(
            full_results + [ToolCallSummary(use.name, SKIPPED_RESULT, True, use.id) for use in skipped]
        )
        if summaries and not skipped and not any(s.is_error for s in summaries):
            ctx.conversation.mark_checkpoint(iteration)

        failed = sum(1 for s in summaries if s.is_error)
        log.info(
            "Executed %d/%d tool calls (%d failed), visual=%s, last tool=%s",
            len(summaries),
            len(tool_uses),
            failed,
            has_visual,
            summaries[-1].tool_name if summaries else "none",
        )

        if ctx.config.post_act_pause_s > 0:
            ctx.sleep(ctx.config.post_act_pause_s)

    def _run_call(self, executor: ToolExecutor, use: ToolUse) -> ToolCallSummary:
        ctx = self._ctx
        result, exc = self._invoke(executor, use)
        error_class = _failure_class(result, exc)

        if error_class is ErrorClass.TRANSIENT:
            log.warning(
                "Tool %r transient error, retrying in %.1fs: %s",
                use.name,
                ctx.config.transient_retry_delay_s,
                _failure_text(result, exc)[:100],
            )
            ctx.sleep(ctx.config.transient_retry_delay_s)
            result, exc = self._invoke(executor, use)
            error_class = _failure_class(result, exc)
            if error_class is not ErrorClass.NONE:
                log.warning("Tool %r retry also failed: %s", use.name, _failure_text(result, exc)[:100])

        if error_class is not ErrorClass.NONE:
            ctx.callbacks.message(
                "system", f"Tool error ({use.name}, {error_class.value}): {_failure_text(result, exc)}"
            )

        if exc is not None:
            return ToolCallSummary(use.name, f"Exception: {exc}", True, use.id)
        assert result is not None
        return ToolCallSummary(use.name, result.result_text, result.is_error, use.id)

    def _invoke(self, executor: ToolExecutor, use: ToolUse) -> tuple[ToolResult | None, Exception | None]:
        tool_input: dict[str, Any] = dict(use.input or {})
        try:
            return executor.execute(use.name, use.id, tool_input, self._ctx.callbacks), None
        except RunCancelled:
            raise
        except Exception as exc:
            return None, exc


def _failure_class(result: ToolResult | None, exc: Exception | None) -> ErrorClass:
    if exc is not None:
        return classify(exc)
    if result is not None and result.is_error:
        return classify_tool_error(result.result_text)
    return ErrorClass.NONE


def _failure_text(result: ToolResult | None, exc: Exception | None) -> str:
    if exc is not None:
        return str(exc) or type(exc).__name__
    return result.result_text if result is not None else ""
