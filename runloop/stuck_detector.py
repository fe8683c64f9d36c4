"""Repetition detection: is the agent looking at the same screen, saying the same thing?

Observe feeds one observation per iteration; Evaluate asks for a verdict;
Recover clears the history once it has intervened.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Protocol

from .visual_diff import hamming_distance

log = logging.getLogger("runloop.stuck_detector")

HASH_TOLERANCE = 10


class RepetitionPolicy(Protocol):
    def record_screenshot(self, phash: int | None) -> None: ...

    def record_ui_summary(self, summary: str) -> None: ...

    def record_text(self, text: str) -> None: ...

    def detect(self) -> str | None:
        """Reason string when the run looks stuck, else None."""
        ...

    def reset(self) -> None: ...


class WindowedRepetitionPolicy:
    """Stuck when the last ``window`` screenshots look alike and the UI tree
    didn't change, or when the last ``window`` text replies are the same."""

    def __init__(self, window: int = 3, hash_tolerance: int = HASH_TOLERANCE) -> None:
        if window < 2:
            raise ValueError("window must be >= 2")
        self.window = window
        self.hash_tolerance = hash_tolerance
        self._hashes: deque[int] = deque(maxlen=window)
        self._ui: deque[str] = deque(maxlen=window)
        self._texts: deque[str] = deque(maxlen=window)

    def record_screenshot(self, phash: int | None) -> None:
        if phash is not None:
            self._hashes.append(phash)

    def record_ui_summary(self, summary: str) -> None:
        self._ui.append(summary or "")

    def record_text(self, text: str) -> None:
        norm = _normalize(text)
        if norm:
            self._texts.append(norm)

    def detect(self) -> str | None:
        if self._screens_repeating():
            return f"Last {self.window} screenshots are perceptually identical"
        if self._texts_repeating():
            return f"Last {self.window} text responses are repeating"
        return None

    def reset(self) -> None:
        self._hashes.clear()
        self._ui.clear()
        self._texts.clear()

    def _screens_repeating(self) -> bool:
        if len(self._hashes) < self.window:
            return False
        first, *rest = self._hashes
        if any(hamming_distance(first, h) > self.hash_tolerance for h in rest):
            return False
        # A changing UI tree means something is happening even if pixels aren't.
        if len(self._ui) >= self.window and len(set(self._ui)) > 1:
            return False
        return True

    def _texts_repeating(self) -> bool:
        return len(self._texts) >= self.window and len(set(self._texts)) == 1


def _normalize(text: str) -> str:
    return " ".join((text or "").lower().split())
