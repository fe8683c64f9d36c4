"""System prompt builder for the run loop.

Gives the model its operating rules, the completion token contract, any
long-term memory for this command and, when capture is down, a notice to
work from the accessibility summary instead.
"""

from __future__ import annotations


# ── system prompt ────────────────────────────────────────────────────────────

SYSTEM_PROMPT = """\
You are an AI desktop automation agent.
You can see the user's screen and control it with the tools provided.

## Input you receive
- A screenshot of the current screen (pixel dimensions noted in context).
- A short accessibility summary of the foreground window, when available.
- A note on how much the screen changed since the previous screenshot.
- The user's command.

## CRITICAL RULES
1. **Coordinates**: (x, y) are PIXEL positions in the latest screenshot (top-left = 0,0).
2. **Small batches**: request at most 6 tool calls per turn.
3. **Click before type**: always click a text field first, then type.
4. **Close popups first**: if any dialog blocks the UI, close it (Esc or click X) before proceeding.
5. **Never repeat a failed action**: if the screen didn't change after your last action, try something different.
6. **Prefer keyboard shortcuts** when they are reliable and well-known.
7. **Click the CENTER** of UI elements, not their edges.

## Finishing
When the command is done and the CURRENT screenshot shows clear evidence of it,
reply with a one-line summary followed by {completion_token} and request no tools.
If the command needs no desktop action at all, answer it directly in text.
"""

SCREENSHOT_UNAVAILABLE_NOTICE = (
    "[NOTICE: Screenshot is currently unavailable. Rely on the accessibility tree for UI state. "
    "Use keyboard navigation (Tab, arrow keys, Enter) when possible instead of mouse coordinates.]"
)


def build_system_prompt(
    *,
    completion_token: str,
    memory_context: str = "",
    screenshot_available: bool = True,
) -> str:
    prompt = SYSTEM_PROMPT.replace("{completion_token}", completion_token)
    if memory_context:
        prompt += "\n## From past runs\n" + memory_context + "\n"
    if not screenshot_available:
        prompt += "\n" + SCREENSHOT_UNAVAILABLE_NOTICE
    return prompt


def normalize_completion_text(text: str) -> str:
    """Lowercase and drop all whitespace so '< task_complete />' still matches."""
    return "".join((text or "").lower().split())


def contains_completion_token(text: str, completion_token: str) -> bool:
    token = normalize_completion_text(completion_token)
    return bool(token) and token in normalize_completion_text(text)
