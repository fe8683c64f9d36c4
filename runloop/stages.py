"""Stage contract shared by the seven loop stages."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Protocol

from .conversation import Conversation
from .errors import MissingCollaboratorError, RunCancelled
from .events import Callbacks
from .kill_switch import KillSwitch
from .recovery import RecoveryLadder
from .run_state import RunState
from .stuck_detector import RepetitionPolicy, WindowedRepetitionPolicy
from .tools import TOOL_DEFINITIONS
from .ui_tree import NullUITree, UITreeProvider

if TYPE_CHECKING:
    from .anthropic_client import ModelClient
    from .capture import Capturer
    from .memory import MemoryStore
    from .orchestrator import OrchestratorConfig
    from .tools import ToolExecutor
    from .verifier import Verifier


class StageId(str, Enum):
    PERCEIVE = "perceive"
    PLAN = "plan"
    ACT = "act"
    OBSERVE = "observe"
    EVALUATE = "evaluate"
    RECOVER = "recover"
    COMPLETE = "complete"


class Stage(Protocol):
    stage_id: StageId

    def execute(self, state: RunState) -> None: ...


@dataclass
class StageContext:
    """Everything a stage may touch besides the RunState.

    Optional collaborators stay None until a stage actually needs them;
    ``require`` turns a missing one into a reportable error.
    """

    config: "OrchestratorConfig"
    conversation: Conversation
    model: "ModelClient | None" = None
    tool_executor: "ToolExecutor | None" = None
    capturer: "Capturer | None" = None
    ui_tree: UITreeProvider = field(default_factory=NullUITree)
    verifier: "Verifier | None" = None
    memory: "MemoryStore | None" = None
    repetition: RepetitionPolicy = field(default_factory=WindowedRepetitionPolicy)
    recovery: RecoveryLadder | None = None
    callbacks: Callbacks = field(default_factory=Callbacks)
    kill_switch: KillSwitch = field(default_factory=KillSwitch)
    tool_defs: list[dict[str, Any]] = field(default_factory=lambda: list(TOOL_DEFINITIONS))
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def check_cancelled(self, state: RunState, where: StageId | str) -> None:
        if state.is_cancelled or self.kill_switch.triggered:
            state.mark_cancelled()
            raise RunCancelled(f"cancelled at {getattr(where, 'value', where)}")

    def require(self, name: str, stage: StageId) -> Any:
        value = getattr(self, name)
        if value is None:
            raise MissingCollaboratorError(stage.value, name)
        return value
