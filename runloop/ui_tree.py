from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Protocol

log = logging.getLogger("runloop.ui_tree")


@dataclass(frozen=True)
class FocusedElement:
    role: str
    value: str | None = None
    selected_children: int = 0


TEXT_ROLES = frozenset({"text_field", "text_area", "combo_box", "search_field", "edit", "document"})


class UITreeProvider(Protocol):
    def summary(self) -> str: ...

    def focused_element(self) -> FocusedElement | None: ...


class NullUITree:
    """Used when no accessibility backend is available on this platform."""

    def summary(self) -> str:
        return ""

    def focused_element(self) -> FocusedElement | None:
        return None


@dataclass(frozen=True)
class ForegroundWindow:
    hwnd: int
    title: str
    pid: int
    process_path: str | None


class ForegroundWindowTree:
    """Minimal UI summary from the Win32 foreground window (title, process, focus)."""

    def summary(self) -> str:
        fg = get_foreground_window()
        if fg is None:
            return ""
        lines = [f"Active window: {fg.title or '(untitled)'}"]
        if fg.process_path:
            lines.append(f"Process: {fg.process_path}")
        focused = self.focused_element()
        if focused is not None:
            lines.append(f"Focused: {focused.role}")
        return "\n".join(lines)

    def focused_element(self) -> FocusedElement | None:
        try:
            import win32gui
        except Exception:
            return None
        try:
            hwnd = win32gui.GetFocus() or win32gui.GetForegroundWindow()
            cls = (win32gui.GetClassName(hwnd) or "").lower()
            text = win32gui.GetWindowText(hwnd) or ""
        except Exception as exc:
            log.debug("focused_element lookup failed: %s", exc)
            return None
        role = "edit" if "edit" in cls else cls or "unknown"
        return FocusedElement(role=role, value=text or None)


def get_foreground_window() -> ForegroundWindow | None:
    try:
        import win32api
        import win32con
        import win32gui
        import win32process
    except Exception:
        return None

    hwnd = win32gui.GetForegroundWindow()
    title = ""
    pid = 0
    process_path: str | None = None

    try:
        title = win32gui.GetWindowText(hwnd) or ""
    except Exception:
        title = ""

    try:
        _tid, pid = win32process.GetWindowThreadProcessId(hwnd)
    except Exception:
        pid = 0

    if pid:
        try:
            hproc = win32api.OpenProcess(win32con.PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
            try:
                process_path = win32process.GetModuleFileNameEx(hproc, 0)
            finally:
                win32api.CloseHandle(hproc)
        except Exception:
            process_path = None

    return ForegroundWindow(hwnd=hwnd, title=title, pid=pid, process_path=process_path)


def default_ui_tree() -> UITreeProvider:
    if sys.platform == "win32":
        return ForegroundWindowTree()
    return NullUITree()
