import pytest

from runloop.events import Callbacks
from runloop.memory import RunMemory
from runloop.tools import (
    AX_SUFFICIENT_TOOLS,
    TOOL_DEFINITIONS,
    DryRunToolExecutor,
    classify_action_type,
    is_visual_tool,
)


def test_tool_definitions_are_well_formed():
    names = [t["name"] for t in TOOL_DEFINITIONS]
    assert len(names) == len(set(names))
    for t in TOOL_DEFINITIONS:
        assert t["description"]
        assert t["input_schema"]["type"] == "object"


def test_visual_split():
    assert is_visual_tool("mouse_click")
    assert is_visual_tool("type_text")
    assert not is_visual_tool("remember")
    assert not is_visual_tool("take_screenshot")
    assert "type_text" in AX_SUFFICIENT_TOOLS
    assert "mouse_click" not in AX_SUFFICIENT_TOOLS


@pytest.mark.parametrize(
    "name,tool_input,expected",
    [
        ("type_text", {"text": "hi"}, "type"),
        ("key_press", {"key": "enter"}, "keypress"),
        ("hotkey", {"keys": ["ctrl", "s"]}, "keypress"),
        ("hotkey", {"keys": ["alt", "tab"]}, "navigation"),
        ("hotkey", {"keys": ["CTRL", "L"]}, "navigation"),
        ("mouse_click", {"x": 1, "y": 1}, "click"),
        ("open_url", {"url": "https://example.com"}, "navigation"),
        ("read_screen", {}, "screenshot"),
        ("shell_exec", {"command": "ls"}, "shell"),
        ("remember", {}, "other"),
    ],
)
def test_classify_action_type(name, tool_input, expected):
    assert classify_action_type(name, tool_input) == expected


def test_dry_run_records_and_succeeds():
    ex = DryRunToolExecutor()
    result = ex.execute("mouse_click", "tu_0", {"x": 10, "y": 20}, Callbacks())
    assert not result.is_error
    assert result.result_text == "dry-run: mouse_click ok"
    assert ex.calls == [("mouse_click", "tu_0", {"x": 10, "y": 20})]


def test_dry_run_rejects_unknown_tool():
    result = DryRunToolExecutor().execute("launch_rocket", "tu_0", {}, Callbacks())
    assert result.is_error
    assert result.result_text == "unknown tool: launch_rocket"


def test_dry_run_shell_needs_confirmation():
    ex = DryRunToolExecutor()
    denied = ex.execute("shell_exec", "tu_0", {"command": "rm -rf build"}, Callbacks())
    assert denied.is_error
    assert denied.result_text.startswith("permission denied")

    prompts = []

    def approve(prompt):
        prompts.append(prompt)
        return True

    allowed = ex.execute("shell_exec", "tu_1", {"command": "ls"}, Callbacks(on_confirmation_needed=approve))
    assert not allowed.is_error
    assert prompts == ["Run shell command? ls"]


def test_dry_run_remember_and_recall_use_run_memory():
    mem = RunMemory.load(None)
    ex = DryRunToolExecutor(memory=mem)

    stored = ex.execute("remember", "tu_0", {"key": "Editor", "value": "notepad"}, Callbacks())
    assert stored.result_text == "remembered Editor"
    assert mem.recall("editor") == "notepad"

    found = ex.execute("recall", "tu_1", {"key": "editor"}, Callbacks())
    assert found.result_text == "notepad" and not found.is_error

    missing = ex.execute("recall", "tu_2", {"key": "browser"}, Callbacks())
    assert missing.result_text == "nothing remembered for browser"


def test_dry_run_memory_tools_without_memory():
    result = DryRunToolExecutor().execute("recall", "tu_0", {"key": "editor"}, Callbacks())
    assert result.is_error
    assert result.result_text == "memory not available"
