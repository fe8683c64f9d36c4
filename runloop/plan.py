from __future__ import annotations

import logging

from .anthropic_client import ModelClient, ModelResponse, ModelTier, retry_after_s
from .error_classifier import ErrorClass, classify
from .errors import FatalRunError, RunCancelled
from .events import LifecycleState
from .prompt import build_system_prompt
from .run_state import RunState
from .stages import StageContext, StageId

log = logging.getLogger("runloop.plan")


class PlanStage:
    """Ask the model for the next step and store its answer."""

    stage_id = StageId.PLAN

    def __init__(self, ctx: StageContext) -> None:
        self._ctx = ctx

    def execute(self, state: RunState) -> None:
        ctx = self._ctx
        ctx.check_cancelled(state, self.stage_id)
        model: ModelClient = ctx.require("model", self.stage_id)

        iteration = state.iteration
        ctx.callbacks.state(LifecycleState.THINKING)
        self._refresh_memory(state, iteration)

        screenshot_available = state.screenshot_available
        ctx.conversation.add_observation(
            iteration=iteration,
            screenshot=state.pre_capture if screenshot_available else None,
            ui_summary=state.ui_tree_summary,
        )
        system_prompt = build_system_prompt(
            completion_token=state.completion_token,
            memory_context=state.memory_context,
            screenshot_available=screenshot_available,
        )
        if not screenshot_available:
            log.info("Screenshot unavailable, added UI-tree notice to system prompt")

        tier = state.planning_tier
        response = self._send_with_retry(state, model, system_prompt, tier)

        ctx.conversation.add_assistant(response.content)
        state.set_model_response(response)
        state.add_tokens(input_tokens=response.input_tokens, output_tokens=response.output_tokens)

        text = response.text
        if text:
            ctx.callbacks.message("assistant", text)
        log.info(
            "iteration=%d, tier=%s, tool_uses=%d, text=%d chars, tokens=%d/%d",
            iteration,
            tier.value,
            len(response.tool_uses),
            len(text),
            response.input_tokens,
            response.output_tokens,
        )

    def _refresh_memory(self, state: RunState, iteration: int) -> None:
        memory = self._ctx.memory
        if memory is None:
            return
        last = state.last_memory_refresh_iteration
        if last is not None and iteration - last < self._ctx.config.memory_refresh_every:
            return
        try:
            context = memory.load_context(state.command)
        except Exception as exc:
            log.warning("Memory context refresh failed: %s", exc)
            return
        state.set_memory_context(context, at_iteration=iteration)
        log.info("Memory context refreshed at iteration %d (%d chars)", iteration, len(context))

    def _send_with_retry(
        self,
        state: RunState,
        model: ModelClient,
        system_prompt: str,
        tier: ModelTier,
    ) -> ModelResponse:
        ctx = self._ctx
        cfg = ctx.config
        attempts = max(1, cfg.plan_max_attempts)
        for attempt in range(1, attempts + 1):
            ctx.check_cancelled(state, self.stage_id)
            try:
                return model.send(
                    ctx.conversation.messages(),
                    system_prompt,
                    ctx.tool_defs,
                    tier,
                    cfg.max_tokens,
                )
            except RunCancelled:
                raise
            except Exception as exc:
                cls = classify(exc)
                if cls is not ErrorClass.TRANSIENT:
                    raise FatalRunError(f"model call failed ({cls.value}): {exc}") from exc
                if attempt >= attempts:
                    raise FatalRunError(f"model call failed after {attempts} attempts: {exc}") from exc
                delay = cfg.plan_backoff_s * (2 ** (attempt - 1))
                hinted = retry_after_s(exc)
                if hinted is not None:
                    delay = max(delay, hinted)
                log.warning("Model call failed (attempt %d/%d), retrying in %.1fs: %s", attempt, attempts, delay, exc)
                ctx.callbacks.message("system", f"Model call failed, retrying in {delay:.0f}s...")
                ctx.sleep(delay)
        raise FatalRunError("model call failed")  # unreachable
