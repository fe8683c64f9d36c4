from __future__ import annotations

import logging

from .error_classifier import ErrorClass, classify_summaries
from .prompt import contains_completion_token
from .run_state import RunState
from .stages import StageContext, StageId

log = logging.getLogger("runloop.evaluate")


class EvaluateStage:
    """Decide whether the run is complete, stuck, or should keep going.

    The orchestrator branches on the flags set here: stuck goes to Recover,
    complete goes to Complete, neither starts the next iteration.
    """

    stage_id = StageId.EVALUATE

    def __init__(self, ctx: StageContext) -> None:
        self._ctx = ctx

    def execute(self, state: RunState) -> None:
        ctx = self._ctx
        ctx.check_cancelled(state, self.stage_id)
        cfg = ctx.config

        iteration = state.iteration
        summaries = state.tool_call_summaries
        error_class = classify_summaries(summaries)
        state.set_last_error_class(error_class)
        if state.is_stuck:
            log.info("iteration=%d, already stuck (%s)", iteration, state.stuck_reason)
            return

        text = state.text_content
        has_tools = state.has_tool_calls
        token_found = contains_completion_token(text, state.completion_token)
        if token_found or not has_tools:
            source = "token match" if token_found else "model indicated done"
            state.mark_complete(source)
            log.info("iteration=%d, completion signal (%s)", iteration, source)
            return

        failed = state.failed_tool_count
        if error_class is ErrorClass.PERMANENT:
            log.warning("iteration=%d, permanent tool error, retrying the same call won't help", iteration)

        all_failed = bool(summaries) and failed == len(summaries)
        transient_only = error_class is ErrorClass.TRANSIENT and failed > 0
        no_progress = not state.has_more_work or all_failed or state.screenshots_identical
        if iteration >= cfg.stuck_min_iteration and no_progress and not transient_only:
            reason = ctx.repetition.detect()
            if reason:
                state.mark_stuck(reason)
                log.warning("iteration=%d, stuck: %s", iteration, reason)
                return

        total = state.total_recovery_attempts
        if total >= state.max_total_recovery_attempts:
            state.mark_complete(f"max total recovery attempts exceeded ({total})", forced=True)
            log.warning("iteration=%d, force-completing after %d recovery attempts", iteration, total)
            return

        if summaries and failed > len(summaries) // 2:
            log.warning("iteration=%d, %d/%d tools failed (%s)", iteration, failed, len(summaries), error_class.value)

        if state.resolve_recovery_episode():
            log.info("iteration=%d, progress after recovery, episode resolved", iteration)

        log.info("iteration=%d, continuing (error class=%s)", iteration, error_class.value)
