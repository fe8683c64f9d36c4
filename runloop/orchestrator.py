"""The run loop.

Each iteration runs Perceive -> Plan -> (Act) -> Observe -> Evaluate, then
branches: stuck goes to Recover and back to Plan without re-perceiving,
complete goes to Complete (accepted ends the run, rejected starts a new
iteration), anything else starts the next iteration. The loop ends with
one of four outcomes: completed, error, cancelled, iteration budget exhausted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping

from .act import ActStage
from .anthropic_client import ModelClient
from .capture import Capturer
from .complete import CompleteStage
from .conversation import Conversation
from .errors import RunCancelled
from .evaluate import EvaluateStage
from .events import Callbacks, LifecycleState
from .kill_switch import KillSwitch
from .memory import MemoryStore, RunMemory
from .observe import ObserveStage
from .perceive import PerceiveStage
from .plan import PlanStage
from .recover import RecoverStage
from .recovery import RecoveryLadder
from .run_state import RunState, Snapshot
from .stages import Stage, StageContext, StageId
from .stuck_detector import RepetitionPolicy, WindowedRepetitionPolicy
from .tools import DryRunToolExecutor, ToolExecutor
from .ui_tree import NullUITree, UITreeProvider
from .verifier import Verifier, VisionVerifier

log = logging.getLogger("runloop.orchestrator")


@dataclass(frozen=True)
class OrchestratorConfig:
    max_iterations: int = 50
    max_rejected_completions: int = 2
    max_recovery_attempts: int = 5
    max_total_recovery_attempts: int = 8
    verification_threshold: int = 60
    transient_retry_delay_s: float = 1.0
    post_act_pause_s: float = 0.1
    min_observe_duration_s: float = 0.0
    screenshot_skip_threshold: int = 2
    stuck_min_iteration: int = 2
    stuck_window: int = 3
    max_tokens: int = 4096
    plan_max_attempts: int = 3
    plan_backoff_s: float = 2.0
    completion_token: str = "<task_complete/>"
    memory_refresh_every: int = 10
    dry_run: bool = False


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    ITERATION_BUDGET_EXHAUSTED = "iteration_budget_exhausted"


@dataclass(frozen=True)
class RunOutcome:
    kind: OutcomeKind
    snapshot: Snapshot
    score: int | None = None
    passed: bool | None = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "outcome": self.kind.value,
            "score": self.score,
            "passed": self.passed,
            "message": self.message,
            "snapshot": self.snapshot.to_dict(),
        }


@dataclass(frozen=True)
class Transition:
    source: str
    target: str
    iteration: int
    timestamp: float = field(default_factory=time.time)


def default_stages(ctx: StageContext) -> dict[StageId, Stage]:
    return {
        StageId.PERCEIVE: PerceiveStage(ctx),
        StageId.PLAN: PlanStage(ctx),
        StageId.ACT: ActStage(ctx),
        StageId.OBSERVE: ObserveStage(ctx),
        StageId.EVALUATE: EvaluateStage(ctx),
        StageId.RECOVER: RecoverStage(ctx),
        StageId.COMPLETE: CompleteStage(ctx),
    }


class Orchestrator:
    def __init__(self, ctx: StageContext, stages: Mapping[StageId, Stage] | None = None) -> None:
        self._ctx = ctx
        self._stages: dict[StageId, Stage] = dict(stages) if stages is not None else default_stages(ctx)
        missing = [s.value for s in StageId if s not in self._stages]
        if missing:
            raise ValueError(f"missing stage implementations: {', '.join(missing)}")
        self.transitions: list[Transition] = []

    @property
    def context(self) -> StageContext:
        return self._ctx

    def run(self, state: RunState) -> RunOutcome:
        log.info("Starting run %s: %r (max_iterations=%d)", state.run_id, state.command, state.max_iterations)
        self._ctx.callbacks.message("user", state.command)
        try:
            outcome = self._loop(state)
        except RunCancelled as exc:
            state.mark_cancelled()
            log.warning("Run %s cancelled (%s)", state.run_id, exc)
            outcome = RunOutcome(OutcomeKind.CANCELLED, state.snapshot(), message=str(exc))
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            log.exception("Run %s aborted: %s", state.run_id, message)
            state.mark_error(message)
            outcome = RunOutcome(OutcomeKind.ERROR, state.snapshot(), message=message)

        if outcome.kind is OutcomeKind.ERROR:
            self._ctx.callbacks.state(LifecycleState.ERROR)
            self._ctx.callbacks.message("system", f"Run failed: {outcome.message}")
        elif outcome.kind is OutcomeKind.CANCELLED:
            self._ctx.callbacks.state(LifecycleState.CANCELLED)
        elif outcome.kind is OutcomeKind.ITERATION_BUDGET_EXHAUSTED:
            self._ctx.callbacks.state(LifecycleState.IDLE)
            self._ctx.callbacks.message("system", outcome.message)

        snap = outcome.snapshot
        log.info(
            "Run %s finished: %s after %d iteration(s), tokens in=%d out=%d (verification %d/%d)",
            state.run_id,
            outcome.kind.value,
            snap.iteration,
            snap.total_input_tokens,
            snap.total_output_tokens,
            snap.verification_input_tokens,
            snap.verification_output_tokens,
        )
        return outcome

    def _loop(self, state: RunState) -> RunOutcome:
        current = StageId.PERCEIVE
        while True:
            if current is StageId.PERCEIVE:
                if state.iteration_budget_exhausted():
                    message = f"Iteration budget exhausted ({state.iteration}/{state.max_iterations})"
                    log.warning(message)
                    self._record(current.value, "budget_exhausted", state)
                    return RunOutcome(OutcomeKind.ITERATION_BUDGET_EXHAUSTED, state.snapshot(), message=message)
                state.increment_iteration()
                state.reset_for_new_iteration()

            self._ctx.check_cancelled(state, current)
            self._stages[current].execute(state)

            if state.is_cancelled:
                raise RunCancelled(f"cancelled during {current.value}")
            if state.has_error:
                return RunOutcome(OutcomeKind.ERROR, state.snapshot(), message=state.error_message)

            nxt = self._next_stage(current, state)
            if nxt is None:
                self._record(current.value, "done", state)
                snap = state.snapshot()
                return RunOutcome(
                    OutcomeKind.COMPLETED,
                    snap,
                    score=snap.verification_score,
                    passed=snap.verification_passed,
                    message=snap.verification_reason,
                )
            self._record(current.value, nxt.value, state)
            current = nxt

    @staticmethod
    def _next_stage(current: StageId, state: RunState) -> StageId | None:
        if current is StageId.PERCEIVE:
            return StageId.PLAN
        if current is StageId.PLAN:
            return StageId.ACT if state.has_tool_calls else StageId.OBSERVE
        if current is StageId.ACT:
            return StageId.OBSERVE
        if current is StageId.OBSERVE:
            return StageId.EVALUATE
        if current is StageId.EVALUATE:
            if state.is_stuck:
                return StageId.RECOVER
            if state.task_complete:
                return StageId.COMPLETE
            return StageId.PERCEIVE
        if current is StageId.RECOVER:
            return StageId.COMPLETE if state.task_complete else StageId.PLAN
        if current is StageId.COMPLETE:
            return None if state.task_complete else StageId.PERCEIVE
        raise ValueError(f"unknown stage {current!r}")

    def _record(self, source: str, target: str, state: RunState) -> None:
        t = Transition(source=source, target=target, iteration=state.iteration)
        self.transitions.append(t)
        log.debug("transition %s -> %s (iteration %d)", source, target, t.iteration)


def create_run(
    command: str,
    *,
    config: OrchestratorConfig | None = None,
    model: ModelClient | None = None,
    tool_executor: ToolExecutor | None = None,
    capturer: Capturer | None = None,
    ui_tree: UITreeProvider | None = None,
    verifier: Verifier | None = None,
    memory: MemoryStore | None = None,
    repetition: RepetitionPolicy | None = None,
    recovery: RecoveryLadder | None = None,
    callbacks: Callbacks | None = None,
    kill_switch: KillSwitch | None = None,
    sleep: Callable[[float], None] = time.sleep,
    stages: Mapping[StageId, Stage] | None = None,
) -> tuple[RunState, Orchestrator]:
    """Wire a RunState and an Orchestrator for one command.

    Collaborators left as None get the defaults the loop can build on its
    own (dry-run executor backed by ``memory`` when ``config.dry_run``, a
    vision verifier and the default recovery ladder on top of ``model``);
    the rest stay None and are reported by the stage that needs them.
    """
    cfg = config or OrchestratorConfig()
    state = RunState(
        command,
        completion_token=cfg.completion_token,
        max_iterations=cfg.max_iterations,
        max_rejected_completions=cfg.max_rejected_completions,
        max_recovery_attempts=cfg.max_recovery_attempts,
        max_total_recovery_attempts=cfg.max_total_recovery_attempts,
    )
    if tool_executor is None and cfg.dry_run:
        tool_executor = DryRunToolExecutor(memory if isinstance(memory, RunMemory) else None)
    if verifier is None and model is not None:
        verifier = VisionVerifier(model)
    ctx = StageContext(
        config=cfg,
        conversation=Conversation(command),
        model=model,
        tool_executor=tool_executor,
        capturer=capturer,
        ui_tree=ui_tree or NullUITree(),
        verifier=verifier,
        memory=memory,
        repetition=repetition or WindowedRepetitionPolicy(window=cfg.stuck_window),
        recovery=recovery or RecoveryLadder.default(model),
        callbacks=callbacks or Callbacks(),
        kill_switch=kill_switch or KillSwitch(),
        sleep=sleep,
    )
    return state, Orchestrator(ctx, stages)
