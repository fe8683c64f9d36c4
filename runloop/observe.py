from __future__ import annotations

import logging

from .capture import ScreenCaptureError, Screenshot
from .events import LifecycleState
from .run_state import RunState
from .stages import StageContext, StageId
from .ui_tree import TEXT_ROLES
from .visual_diff import compare, perceptual_hash

log = logging.getLogger("runloop.observe")

CLICK_TOOLS = frozenset({"mouse_click"})


class ObserveStage:
    """Look at the result of Act: post capture, UI tree, visual diff.

    Also feeds the repetition policy and records the step outcome in memory.
    """

    stage_id = StageId.OBSERVE

    def __init__(self, ctx: StageContext) -> None:
        self._ctx = ctx

    def execute(self, state: RunState) -> None:
        ctx = self._ctx
        ctx.check_cancelled(state, self.stage_id)
        started = ctx.clock()
        iteration = state.iteration

        ctx.repetition.record_text(state.text_content)

        if not state.tool_call_summaries:
            log.info("iteration=%d, no tools executed, nothing to observe", iteration)
            return

        ctx.callbacks.state(LifecycleState.OBSERVING)
        try:
            if state.adaptive_skipped_screenshot:
                summary = self._read_ui_tree()
                state.set_ui_tree_summary(summary)
                ctx.repetition.record_ui_summary(summary)
                log.info("iteration=%d, adaptive skip, UI tree only", iteration)
                return

            last_tool = state.last_tool_name
            if self._verified_by_ui_tree(last_tool):
                summary = self._read_ui_tree()
                state.set_ui_tree_summary(summary)
                state.set_ax_verification_succeeded(True)
                ctx.repetition.record_ui_summary(summary)
                log.info("iteration=%d, UI tree confirmed %r, skipped post screenshot", iteration, last_tool)
                return

            post = self._capture()
            summary = self._read_ui_tree()
            state.set_post_capture(post)
            state.set_ui_tree_summary(summary)

            pre = state.pre_capture
            if pre is not None and post is not None:
                diff = compare(pre.png, post.png)
                state.set_visual_diff(diff.description, diff.identical)
                if diff.description:
                    ctx.conversation.add_user_text(f"Visual change after the last actions: {diff.description}")

            if post is not None:
                ctx.repetition.record_screenshot(perceptual_hash(post.png))
            ctx.repetition.record_ui_summary(summary)

            log.info(
                "iteration=%d, post screenshot=%s, identical=%s, ui tree=%d chars",
                iteration,
                f"{post.width}x{post.height}" if post is not None else "none",
                state.screenshots_identical,
                len(summary),
            )
        finally:
            self._record_step_outcome(state, iteration)
            self._enforce_min_duration(started)

    def _verified_by_ui_tree(self, last_tool: str) -> bool:
        if last_tool != "type_text" and last_tool not in CLICK_TOOLS:
            return False
        try:
            focused = self._ctx.ui_tree.focused_element()
        except Exception as exc:
            log.debug("focused_element failed: %s", exc)
            return False
        if focused is None:
            return False
        if last_tool == "type_text":
            return focused.role in TEXT_ROLES and bool(focused.value)
        return focused.selected_children > 0

    def _capture(self) -> Screenshot | None:
        capturer = self._ctx.capturer
        if capturer is None:
            return None
        try:
            return capturer.capture()
        except ScreenCaptureError as exc:
            log.warning("Post-action screenshot failed: %s", exc)
            return None

    def _read_ui_tree(self) -> str:
        try:
            return self._ctx.ui_tree.summary()
        except Exception as exc:
            log.warning("UI tree summary failed: %s", exc)
            return ""

    def _record_step_outcome(self, state: RunState, iteration: int) -> None:
        memory = self._ctx.memory
        summaries = state.tool_call_summaries
        if memory is None or not summaries:
            return
        try:
            memory.record_step_outcome(
                command=state.command,
                iteration=iteration,
                tool_names=[s.tool_name for s in summaries],
                success=not any(s.is_error for s in summaries),
            )
        except Exception as exc:
            log.warning("Recording step outcome failed: %s", exc)

    def _enforce_min_duration(self, started: float) -> None:
        remaining = self._ctx.config.min_observe_duration_s - (self._ctx.clock() - started)
        if remaining > 0:
            self._ctx.sleep(remaining)
