from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

log = logging.getLogger("runloop.events")


class LifecycleState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    THINKING = "thinking"
    EXECUTING = "executing"
    OBSERVING = "observing"
    RECOVERING = "recovering"
    VERIFYING = "verifying"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "assistant", "system" or "user"
    content: str
    timestamp_utc: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )


def _ignore_state(_state: LifecycleState) -> None:
    return None


def _ignore_message(_msg: ChatMessage) -> None:
    return None


def _deny(_prompt: str) -> bool:
    return False


@dataclass(frozen=True)
class Callbacks:
    """Side-channel hooks supplied at construction.

    These may be invoked from the loop thread while other threads (remote
    approval prompts, reply delivery) touch the same RunState, so callers
    must not assume they run on any particular thread.
    """

    on_state_change: Callable[[LifecycleState], None] = _ignore_state
    on_message: Callable[[ChatMessage], None] = _ignore_message
    on_confirmation_needed: Callable[[str], bool] = _deny

    def state(self, value: LifecycleState) -> None:
        try:
            self.on_state_change(value)
        except Exception as exc:
            log.warning("on_state_change(%s) failed: %s", value.value, exc)

    def message(self, role: str, content: str) -> None:
        try:
            self.on_message(ChatMessage(role=role, content=content))
        except Exception as exc:
            log.warning("on_message failed: %s", exc)

    def confirm(self, prompt: str) -> bool:
        try:
            return bool(self.on_confirmation_needed(prompt))
        except Exception as exc:
            log.warning("on_confirmation_needed failed, treating as denied: %s", exc)
            return False
