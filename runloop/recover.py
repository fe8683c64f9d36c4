from __future__ import annotations

import logging

from .events import LifecycleState
from .recovery import RecoveryLadder, RecoveryRequest, tier_label
from .run_state import RunState
from .stages import StageContext, StageId

log = logging.getLogger("runloop.recover")


class RecoverStage:
    """Run the current recovery tier and hand control back to Plan.

    When the episode or lifetime budget is already spent, no tier runs: the
    run is marked complete (forced) so the loop goes to Complete instead.
    """

    stage_id = StageId.RECOVER

    def __init__(self, ctx: StageContext) -> None:
        self._ctx = ctx

    def execute(self, state: RunState) -> None:
        ctx = self._ctx
        ctx.check_cancelled(state, self.stage_id)
        ladder: RecoveryLadder = ctx.require("recovery", self.stage_id)
        ctx.callbacks.state(LifecycleState.RECOVERING)

        reason = state.stuck_reason
        iteration = state.iteration

        if state.recovery_budget_exhausted():
            episode = state.recovery_attempts
            total = state.total_recovery_attempts
            source = (
                f"recovery budget exhausted ({episode}/{state.max_recovery_attempts} this episode, "
                f"{total}/{state.max_total_recovery_attempts} total)"
            )
            state.mark_complete(source, forced=True)
            state.clear_stuck()
            log.warning("iteration=%d, %s, escalating to completion", iteration, source)
            ctx.callbacks.message("system", f"Agent stuck ({reason}), giving up: {source}")
            return

        tier = state.recovery_strategy_index
        label = tier_label(tier)
        log.info("iteration=%d, recovery tier %d (%s), reason=%s", iteration, tier, label, reason)
        ctx.callbacks.message("system", f"Agent stuck ({reason}), trying recovery strategy {tier}: {label}...")

        result = ladder.run(
            tier,
            RecoveryRequest(
                command=state.command,
                stuck_reason=reason,
                iteration=iteration,
                screenshot=state.pre_capture,
                completion_token=state.completion_token,
                conversation=ctx.conversation,
            ),
        )

        if result.input_tokens or result.output_tokens:
            state.add_tokens(input_tokens=result.input_tokens, output_tokens=result.output_tokens)
        if result.planning_tier is not None:
            state.set_planning_tier(result.planning_tier)
        if result.escalated_to_brain:
            state.set_escalated_to_brain(True)
        if result.error:
            ctx.callbacks.message("system", f"{label} failed: {result.error}")

        if result.guidance:
            ctx.conversation.add_guidance(result.guidance)
            log.info("Tier %d guidance injected (%d chars)", tier, len(result.guidance))

        state.advance_recovery_strategy()
        attempts = state.increment_recovery_attempts()
        state.clear_stuck()
        ctx.repetition.reset()
        log.info(
            "Recovery attempt %d (%s) done, total=%d, stuck tracking cleared",
            attempts,
            label,
            state.total_recovery_attempts,
        )
