"""Tool catalogue advertised to the model and the execution boundary contract.

Keyboard tools (type_text, key_press, hotkey, wait_ms), mouse tools
(mouse_click, mouse_scroll), screen tools and a few non-visual helpers.
The concrete input synthesis lives behind ``ToolExecutor``; this module only
ships a dry-run executor, which still answers remember/recall from run memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from .events import Callbacks
from .memory import RunMemory

log = logging.getLogger("runloop.tools")


@dataclass(frozen=True)
class ToolResult:
    result_text: str
    is_error: bool = False


class ToolExecutor(Protocol):
    def execute(
        self,
        tool_name: str,
        tool_use_id: str,
        tool_input: dict[str, Any],
        callbacks: Callbacks,
    ) -> ToolResult: ...


# Tools whose effect never shows up on screen.
NON_VISUAL_TOOLS = frozenset({
    "remember",
    "recall",
    "vault_read",
    "vault_write",
    "vault_list",
    "task_create",
    "task_update",
    "task_list",
    "take_screenshot",
    "read_screen",
    "shell_exec",
    "run_shell_command",
})

CAPTURE_TOOLS = frozenset({"take_screenshot", "read_screen"})

# After these, the UI tree tells Perceive enough; no fresh screenshot needed.
AX_SUFFICIENT_TOOLS = frozenset({"type_text"}) | CAPTURE_TOOLS | NON_VISUAL_TOOLS


def _schema(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        out["required"] = required
    return out


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "type_text",
        "description": "Type a string into the focused control. Click the field first.",
        "input_schema": _schema({"text": {"type": "string"}}, ["text"]),
    },
    {
        "name": "key_press",
        "description": "Press a single key: enter, tab, esc, backspace, arrows, f1-f24, a-z, 0-9.",
        "input_schema": _schema({"key": {"type": "string"}}, ["key"]),
    },
    {
        "name": "hotkey",
        "description": 'Press a modifier combination, e.g. ["ctrl", "l"].',
        "input_schema": _schema({"keys": {"type": "array", "items": {"type": "string"}}}, ["keys"]),
    },
    {
        "name": "mouse_click",
        "description": "Click at pixel coordinates of the latest screenshot.",
        "input_schema": _schema(
            {
                "x": {"type": "integer"},
                "y": {"type": "integer"},
                "button": {"type": "string", "enum": ["left", "right", "middle"]},
                "clicks": {"type": "integer", "minimum": 1, "maximum": 3},
            },
            ["x", "y"],
        ),
    },
    {
        "name": "mouse_scroll",
        "description": "Scroll at a position.",
        "input_schema": _schema(
            {
                "x": {"type": "integer"},
                "y": {"type": "integer"},
                "direction": {"type": "string", "enum": ["up", "down"]},
                "clicks": {"type": "integer", "minimum": 1, "maximum": 20},
            },
            ["x", "y"],
        ),
    },
    {
        "name": "open_url",
        "description": "Open a URL in the default browser.",
        "input_schema": _schema({"url": {"type": "string"}}, ["url"]),
    },
    {
        "name": "wait_ms",
        "description": "Pause for the given number of milliseconds (0-10000).",
        "input_schema": _schema({"ms": {"type": "integer", "minimum": 0, "maximum": 10000}}, ["ms"]),
    },
    {
        "name": "take_screenshot",
        "description": "Capture the screen again without acting.",
        "input_schema": _schema({}),
    },
    {
        "name": "read_screen",
        "description": "Return the accessibility summary of the foreground window.",
        "input_schema": _schema({}),
    },
    {
        "name": "shell_exec",
        "description": "Run a shell command and return its output.",
        "input_schema": _schema({"command": {"type": "string"}}, ["command"]),
    },
    {
        "name": "remember",
        "description": "Store a fact for later runs.",
        "input_schema": _schema({"key": {"type": "string"}, "value": {"type": "string"}}, ["key", "value"]),
    },
    {
        "name": "recall",
        "description": "Look up a stored fact.",
        "input_schema": _schema({"key": {"type": "string"}}, ["key"]),
    },
]

KNOWN_TOOLS = frozenset(t["name"] for t in TOOL_DEFINITIONS) | NON_VISUAL_TOOLS


def is_visual_tool(tool_name: str) -> bool:
    return tool_name not in NON_VISUAL_TOOLS


def classify_action_type(tool_name: str, tool_input: dict[str, Any] | None = None) -> str:
    """Bucket a tool call into type/keypress/click/navigation/screenshot/shell/other."""
    name = (tool_name or "").strip().lower()
    if name == "type_text":
        return "type"
    if name in {"key_press", "hotkey"}:
        keys = [str(k).lower() for k in (tool_input or {}).get("keys", []) or []]
        # ctrl+l / alt+tab style combos move focus rather than edit content
        if name == "hotkey" and ({"alt", "tab"} <= set(keys) or {"ctrl", "l"} <= set(keys)):
            return "navigation"
        return "keypress"
    if name in {"mouse_click", "mouse_scroll"}:
        return "click"
    if name in {"open_url", "open_app", "navigate"}:
        return "navigation"
    if name in CAPTURE_TOOLS:
        return "screenshot"
    if name in {"shell_exec", "run_shell_command"}:
        return "shell"
    return "other"


class DryRunToolExecutor:
    """Logs every requested call and reports success without touching the machine.

    remember and recall are served from ``memory`` when one is given.
    """

    def __init__(self, memory: RunMemory | None = None) -> None:
        self.memory = memory
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def execute(
        self,
        tool_name: str,
        tool_use_id: str,
        tool_input: dict[str, Any],
        callbacks: Callbacks,
    ) -> ToolResult:
        self.calls.append((tool_name, tool_use_id, dict(tool_input or {})))
        if tool_name not in KNOWN_TOOLS:
            log.warning("dry-run: unknown tool %r", tool_name)
            return ToolResult(f"unknown tool: {tool_name}", is_error=True)
        if tool_name in {"shell_exec", "run_shell_command"}:
            command = str((tool_input or {}).get("command", ""))
            if not callbacks.confirm(f"Run shell command? {command}"):
                return ToolResult(f"permission denied: {command!r} was not approved", is_error=True)
        if tool_name in {"remember", "recall"}:
            return self._memory_tool(tool_name, tool_input or {})
        log.info("dry-run: %s %s", tool_name, tool_input)
        return ToolResult(f"dry-run: {tool_name} ok")

    def _memory_tool(self, tool_name: str, tool_input: dict[str, Any]) -> ToolResult:
        if self.memory is None:
            return ToolResult("memory not available", is_error=True)
        key = str(tool_input.get("key", "")).strip()
        if not key:
            return ToolResult(f"{tool_name}: missing key", is_error=True)
        if tool_name == "remember":
            self.memory.remember(key, str(tool_input.get("value", "")))
            log.info("remembered %r", key)
            return ToolResult(f"remembered {key}")
        value = self.memory.recall(key)
        if value is None:
            return ToolResult(f"nothing remembered for {key}")
        return ToolResult(value)
