from __future__ import annotations

import logging

from .capture import ScreenCaptureError
from .events import LifecycleState
from .run_state import RunState
from .stages import StageContext, StageId
from .tools import AX_SUFFICIENT_TOOLS

log = logging.getLogger("runloop.perceive")

BASELINE_ITERATIONS = 2


class PerceiveStage:
    """Capture the screen and the UI summary, unless the last step makes it redundant."""

    stage_id = StageId.PERCEIVE

    def __init__(self, ctx: StageContext) -> None:
        self._ctx = ctx

    def execute(self, state: RunState) -> None:
        ctx = self._ctx
        ctx.check_cancelled(state, self.stage_id)
        ctx.callbacks.state(LifecycleState.CAPTURING)

        iteration = state.iteration
        skip_reason = self._skip_reason(state, iteration)
        if skip_reason:
            summary = self._read_ui_tree()
            state.set_ui_tree_summary(summary)
            state.set_adaptive_skipped_screenshot(True)
            state.set_screenshot_available(False)
            log.info("iteration=%d, skipped screenshot (%s), ui tree=%d chars", iteration, skip_reason, len(summary))
            return

        shot = None
        if ctx.capturer is None:
            log.warning("iteration=%d, no screen capturer configured", iteration)
        else:
            try:
                shot = ctx.capturer.capture()
            except ScreenCaptureError as exc:
                log.warning("Screenshot capture failed, relying on the UI tree this iteration: %s", exc)

        consecutive = state.increment_consecutive_screenshots()
        state.set_screenshot_available(shot is not None)
        summary = self._read_ui_tree()
        state.set_pre_capture(shot)
        state.set_ui_tree_summary(summary)

        log.info(
            "iteration=%d, screenshot=%s, consecutive captures=%d, ui tree=%d chars",
            iteration,
            f"{shot.width}x{shot.height}" if shot is not None else "none",
            consecutive,
            len(summary),
        )

    def _skip_reason(self, state: RunState, iteration: int) -> str:
        if iteration <= BASELINE_ITERATIONS:
            return ""
        tool = state.last_tool_name
        if tool and tool in AX_SUFFICIENT_TOOLS:
            return f"last action was {tool}"
        consecutive = state.consecutive_screenshots_without_action
        if consecutive >= self._ctx.config.screenshot_skip_threshold:
            return f"{consecutive} consecutive screenshots without action"
        return ""

    def _read_ui_tree(self) -> str:
        try:
            return self._ctx.ui_tree.summary()
        except Exception as exc:
            log.warning("UI tree summary failed: %s", exc)
            return ""
