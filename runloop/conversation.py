from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from .anthropic_client import image_block, text_block
from .capture import Screenshot
from .run_state import ToolCallSummary

log = logging.getLogger("runloop.conversation")

SCREENSHOT_PLACEHOLDER = "[earlier screenshot omitted to save tokens]"


@dataclass(frozen=True)
class Checkpoint:
    iteration: int
    length: int
    tail_blocks: int = 0


class Conversation:
    """Ordered message list sent to the model on every Plan.

    Consecutive user turns are merged so the list always alternates
    user/assistant. Only the newest screenshot is sent as an image; older
    ones are replaced by a text placeholder when the messages are rendered.
    """

    def __init__(self, command: str) -> None:
        self.command = command
        self._messages: list[dict[str, Any]] = []
        self._checkpoints: list[Checkpoint] = []
        self._observed_iterations: set[int] = set()
        self.add_user_text(self._build_initial_task_message(command))

    @staticmethod
    def _build_initial_task_message(command: str) -> str:
        return (
            "Task:\n"
            f"- User command: {command}\n"
            "- Never repeat actions already completed unless the UI clearly indicates retry is required.\n"
            "- Use the tools to act; look at each new screenshot before deciding the next step."
        )

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def checkpoints(self) -> list[Checkpoint]:
        return list(self._checkpoints)

    # ── appending ───────────────────────────────────────────────────────────

    def _append_user_blocks(self, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if self._messages and self._messages[-1]["role"] == "user":
            self._messages[-1]["content"].extend(blocks)
        else:
            self._messages.append({"role": "user", "content": list(blocks)})

    def add_user_text(self, text: str) -> None:
        self._append_user_blocks([text_block(text)])

    def add_observation(
        self,
        *,
        iteration: int,
        screenshot: Screenshot | None,
        ui_summary: str = "",
    ) -> bool:
        """Attach this iteration's perception once. Returns False if already attached."""
        if iteration in self._observed_iterations:
            return False
        self._observed_iterations.add(iteration)

        context: dict[str, Any] = {"iteration": iteration}
        if screenshot is not None:
            context["screenshot_pixels"] = f"{screenshot.width}x{screenshot.height}"
        else:
            context["screenshot"] = "unavailable"
        if ui_summary:
            context["ui_tree"] = ui_summary

        blocks = [text_block("Current observation:\n" + json.dumps(context, ensure_ascii=True))]
        if screenshot is not None:
            blocks.append(image_block(screenshot.png, screenshot.media_type))
        self._append_user_blocks(blocks)
        return True

    def add_assistant(self, content: list[dict[str, Any]] | tuple[dict[str, Any], ...]) -> None:
        blocks = [dict(b) for b in content]
        if not blocks:
            blocks = [text_block("(no response)")]
        self._messages.append({"role": "assistant", "content": blocks})

    def add_tool_results(self, summaries: list[ToolCallSummary]) -> None:
        blocks: list[dict[str, Any]] = []
        for s in summaries:
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": s.tool_use_id,
                "content": s.result_text or ("error" if s.is_error else "ok"),
            }
            if s.is_error:
                block["is_error"] = True
            blocks.append(block)
        self._append_user_blocks(blocks)

    def add_guidance(self, text: str) -> None:
        self.add_user_text(text)

    # ── checkpoints ─────────────────────────────────────────────────────────

    def mark_checkpoint(self, iteration: int) -> None:
        tail = len(self._messages[-1]["content"]) if self._messages else 0
        self._checkpoints.append(Checkpoint(iteration=iteration, length=len(self._messages), tail_blocks=tail))

    def backtrack(self) -> Checkpoint | None:
        """Drop everything after the last known-good checkpoint.

        Returns the checkpoint, or None when there is nothing to go back to.
        """
        if not self._checkpoints:
            return None
        cp = self._checkpoints[-1]
        del self._messages[cp.length :]
        # User turns appended after the checkpoint may have been merged into its last message.
        if self._messages:
            del self._messages[-1]["content"][cp.tail_blocks :]
        self._observed_iterations = {i for i in self._observed_iterations if i <= cp.iteration}
        log.info("Backtracked conversation to iteration %d (%d messages)", cp.iteration, cp.length)
        return cp

    # ── rendering ───────────────────────────────────────────────────────────

    def messages(self) -> list[dict[str, Any]]:
        """Messages ready to send: deep-enough copies with only the last image kept."""
        last_image: tuple[int, int] | None = None
        for mi, msg in enumerate(self._messages):
            for bi, block in enumerate(msg["content"]):
                if block.get("type") == "image":
                    last_image = (mi, bi)

        out: list[dict[str, Any]] = []
        for mi, msg in enumerate(self._messages):
            content: list[dict[str, Any]] = []
            for bi, block in enumerate(msg["content"]):
                if block.get("type") == "image" and (mi, bi) != last_image:
                    content.append(text_block(SCREENSHOT_PLACEHOLDER))
                else:
                    content.append(block)
            out.append({"role": msg["role"], "content": content})
        return out

