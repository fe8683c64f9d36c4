"""Long-term run memory: what worked and what didn't, kept in a local JSON file."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

log = logging.getLogger("runloop.memory")


class MemoryStore(Protocol):
    def load_context(self, command: str) -> str: ...

    def record_step_outcome(self, *, command: str, iteration: int, tool_names: list[str], success: bool) -> None: ...

    def persist_run_context(self, command: str, success: bool) -> None: ...


@dataclass
class RunMemory:
    """Persistent storage for procedures and failures across runs.

    ``path=None`` keeps everything in memory (tests, dry runs).
    """

    path: str | None
    data: dict[str, Any] = field(default_factory=dict)
    pending_steps: list[dict[str, Any]] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: str | None) -> "RunMemory":
        data: dict[str, Any] = {}
        if path:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    data = {}
            except FileNotFoundError:
                data = {}
            except (OSError, json.JSONDecodeError) as exc:
                log.warning("Could not read memory file %s, starting empty: %s", path, exc)
                data = {}
        return cls(path=path, data=data)

    def save(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=2, ensure_ascii=True)
        os.replace(tmp, self.path)

    # ------------------------------------------------------------------
    # Record outcomes
    # ------------------------------------------------------------------

    def record_step_outcome(self, *, command: str, iteration: int, tool_names: list[str], success: bool) -> None:
        self.pending_steps.append(
            {
                "command": command.strip(),
                "iteration": int(iteration),
                "tools": list(tool_names)[:12],
                "success": bool(success),
                "ts": int(time.time()),
            }
        )

    def persist_run_context(self, command: str, success: bool) -> None:
        """Move this run's step outcomes into procedures (success) or failures."""
        bucket_name = "procedures" if success else "failures"
        bucket = self.data.setdefault(bucket_name, [])
        bucket.append(
            {
                "command": command.strip(),
                "steps": [s["tools"] for s in self.pending_steps if s["tools"]][-20:],
                "failed_steps": sum(1 for s in self.pending_steps if not s["success"]),
                "ts": int(time.time()),
            }
        )
        if len(bucket) > 100:
            del bucket[: len(bucket) - 100]
        self.pending_steps = []
        self.save()

    def remember(self, key: str, value: str) -> None:
        facts = self.data.setdefault("facts", {})
        facts[_norm(key)] = value
        self.save()

    def recall(self, key: str) -> str | None:
        value = self.data.get("facts", {}).get(_norm(key))
        return value if isinstance(value, str) else None

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def load_context(self, command: str) -> str:
        """Render memory relevant to ``command`` as prompt text ("" if none)."""
        lines: list[str] = []

        for p in self.data.get("procedures", [])[-30:]:
            if _command_overlaps(p.get("command", ""), command):
                steps = " -> ".join("+".join(s) for s in p.get("steps", [])[:8])
                lines.append(f"- Worked before for '{p.get('command', '')}': {steps or '(no tools)'}")

        for f in self.data.get("failures", [])[-30:]:
            if _command_overlaps(f.get("command", ""), command):
                lines.append(f"- Failed before for '{f.get('command', '')}' ({f.get('failed_steps', 0)} failed steps)")

        facts = self.data.get("facts", {})
        if isinstance(facts, dict):
            for k, v in list(facts.items())[:10]:
                lines.append(f"- Fact: {k} = {v}")

        return "\n".join(lines[:16])


_STOP_WORDS = frozenset(
    {"a", "an", "the", "to", "in", "on", "for", "and", "or", "is", "it", "of", "my", "i", "me", "do"}
)


def _norm(s: str) -> str:
    return (s or "").strip().lower()


def _command_overlaps(cmd1: str, cmd2: str) -> bool:
    """True if two commands share enough meaningful keywords."""
    w1 = set(cmd1.lower().split()) - _STOP_WORDS
    w2 = set(cmd2.lower().split()) - _STOP_WORDS
    if not w1 or not w2:
        return False
    overlap = w1 & w2
    return len(overlap) >= 2 or (len(overlap) / max(len(w1), len(w2))) > 0.4
