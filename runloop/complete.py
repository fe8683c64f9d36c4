from __future__ import annotations

import logging

from .events import LifecycleState
from .run_state import RunState
from .stages import StageContext, StageId
from .verifier import VerificationResult, Verifier

log = logging.getLogger("runloop.complete")

TEXT_ONLY_REASON = "Text-only run, auto-pass"
NON_VISUAL_REASON = "Non-visual tools only, auto-pass"


class CompleteStage:
    """Verification gate in front of a successful finish.

    A rejected completion is cleared and fed back to the model so the loop
    re-enters planning; once the rejection budget is spent the failing score
    is accepted as-is with a reason saying so.
    """

    stage_id = StageId.COMPLETE

    def __init__(self, ctx: StageContext) -> None:
        self._ctx = ctx

    def execute(self, state: RunState) -> None:
        ctx = self._ctx
        ctx.check_cancelled(state, self.stage_id)
        ctx.callbacks.state(LifecycleState.VERIFYING)

        any_tools = state.any_tool_calls_executed
        any_visual = state.any_visual_tool_calls_executed
        any_succeeded = state.any_tool_calls_succeeded
        log.info(
            "Verifying iteration=%d, source=%s, any_tools=%s, any_visual=%s, any_succeeded=%s",
            state.iteration,
            state.completion_source,
            any_tools,
            any_visual,
            any_succeeded,
        )

        if not any_tools:
            result = VerificationResult(score=100, passed=True, reason=TEXT_ONLY_REASON, method="auto")
        elif not any_visual and any_succeeded:
            result = VerificationResult(score=100, passed=True, reason=NON_VISUAL_REASON, method="auto")
        else:
            # Includes the all-failed case: a run where nothing worked never auto-passes.
            result = self._verify(state)
        log.info("Verification score=%d passed=%s (%s): %s", result.score, result.passed, result.method, result.reason)

        score, passed, reason = result.score, result.passed, result.reason
        if not passed:
            budget_spent = state.increment_rejected_completions()
            rejections = state.rejected_completions
            if not budget_spent:
                state.clear_completion()
                ctx.conversation.add_guidance(
                    f"Verification check: your completion was rejected. Score: {score}/100. "
                    f"Reason: {reason}. Please try again."
                )
                ctx.callbacks.message(
                    "system",
                    f"Completion rejected, verification score {score}/100: {reason} "
                    f"(attempt {rejections}/{state.max_rejected_completions})",
                )
                log.warning("Completion rejected, score=%d, attempt=%d", score, rejections)
                return
            reason = f"Force-accepted after {rejections} rejected completions: {reason}"
            log.warning("Force-accepting after %d rejected completions (score %d)", rejections, score)
        elif state.completion_forced:
            reason = f"Forced completion ({state.completion_source}): {reason}"

        state.set_verification_result(score=score, passed=passed, reason=reason)
        self._persist(state, passed)
        ctx.callbacks.message("system", f"Run complete, score {score}/100: {reason}")
        ctx.callbacks.state(LifecycleState.DONE)
        log.info("Run complete, score=%d passed=%s iterations=%d", score, passed, state.iteration)

    def _verify(self, state: RunState) -> VerificationResult:
        verifier: Verifier = self._ctx.require("verifier", self.stage_id)
        pre, post = state.pre_capture, state.post_capture
        if post is None:
            # Nothing ran this iteration, so the Perceive capture is the latest screen.
            pre, post = None, pre
        result = verifier.verify(
            command=state.command,
            text_content=state.text_content,
            pre_capture=pre,
            post_capture=post,
            tool_results=state.tool_call_summaries,
            threshold=self._ctx.config.verification_threshold,
        )
        state.add_verification_tokens(input_tokens=result.input_tokens, output_tokens=result.output_tokens)
        return result

    def _persist(self, state: RunState, success: bool) -> None:
        memory = self._ctx.memory
        if memory is None:
            return
        try:
            memory.persist_run_context(state.command, success)
        except Exception as exc:
            log.warning("Persisting run context failed: %s", exc)
