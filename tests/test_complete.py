import pytest

from runloop.complete import NON_VISUAL_REASON, TEXT_ONLY_REASON, CompleteStage
from runloop.errors import MissingCollaboratorError
from runloop.events import Callbacks, LifecycleState
from runloop.run_state import ToolCallSummary
from runloop.verifier import VerificationResult

from fakes import FakeMemory, FakeVerifier, make_ctx, make_shot, make_state


def _failing(score=30, reason="Notepad is not open"):
    return VerificationResult(score=score, passed=False, reason=reason, input_tokens=50, output_tokens=10)


def _completed_state(**kwargs):
    state = make_state(**kwargs)
    state.mark_complete("token match")
    return state


def test_text_only_run_auto_passes():
    states = []
    ctx = make_ctx(callbacks=Callbacks(on_state_change=states.append))
    state = _completed_state()

    CompleteStage(ctx).execute(state)

    assert state.verification_score == 100
    assert state.verification_passed
    assert state.verification_reason == TEXT_ONLY_REASON
    assert ctx.verifier.calls == []
    assert ctx.memory.persisted == [(state.command, True)]
    assert states == [LifecycleState.VERIFYING, LifecycleState.DONE]


def test_non_visual_success_auto_passes():
    ctx = make_ctx()
    state = _completed_state()
    state.set_tool_call_results([ToolCallSummary.of("remember", "stored", False)], has_visual=False)
    CompleteStage(ctx).execute(state)
    assert state.verification_reason == NON_VISUAL_REASON
    assert ctx.verifier.calls == []


def test_all_failed_run_is_verified():
    ctx = make_ctx(verifier=FakeVerifier([_failing()]))
    state = _completed_state(max_rejected_completions=3)
    state.set_tool_call_results([ToolCallSummary.of("remember", "disk full", True)], has_visual=False)

    CompleteStage(ctx).execute(state)

    assert len(ctx.verifier.calls) == 1
    assert ctx.verifier.calls[0]["threshold"] == 60
    assert not state.task_complete
    assert state.verification_input_tokens == 50


def test_rejection_then_force_accept():
    ctx = make_ctx(verifier=FakeVerifier([_failing(), _failing(score=35)]))
    state = _completed_state(max_rejected_completions=2)
    state.set_tool_call_results([ToolCallSummary.of("mouse_click", "ok", False)], has_visual=True)
    stage = CompleteStage(ctx)

    stage.execute(state)

    assert not state.task_complete
    assert state.rejected_completions == 1
    feedback = ctx.conversation.messages()[-1]["content"][-1]["text"]
    assert feedback == (
        "Verification check: your completion was rejected. Score: 30/100. "
        "Reason: Notepad is not open. Please try again."
    )
    assert ctx.memory.persisted == []

    state.mark_complete("token match")
    stage.execute(state)

    assert state.task_complete
    assert state.rejected_completions == 2
    assert state.verification_score == 35
    assert not state.verification_passed
    assert state.verification_reason == "Force-accepted after 2 rejected completions: Notepad is not open"
    assert len(ctx.verifier.calls) == 2
    assert ctx.memory.persisted == [(state.command, False)]
    assert state.verification_input_tokens == 100


def test_forced_completion_reason_is_prefixed():
    ctx = make_ctx()
    state = make_state()
    state.mark_complete("recovery budget exhausted (5/5 this episode, 5/8 total)", forced=True)
    state.set_tool_call_results([ToolCallSummary.of("mouse_click", "ok", False)], has_visual=True)

    CompleteStage(ctx).execute(state)

    assert state.verification_passed
    assert state.verification_reason == (
        "Forced completion (recovery budget exhausted (5/5 this episode, 5/8 total)): looks done"
    )


def test_latest_capture_is_verified_when_nothing_ran_this_iteration():
    ctx = make_ctx()
    state = make_state()
    state.set_tool_call_results([ToolCallSummary.of("mouse_click", "ok", False)], has_visual=True)
    state.reset_for_new_iteration()
    shot = make_shot()
    state.set_pre_capture(shot)
    state.mark_complete("token match")

    CompleteStage(ctx).execute(state)

    call = ctx.verifier.calls[0]
    assert call["post_capture"] is shot
    assert call["pre_capture"] is None


def test_memory_failure_does_not_abort():
    class BrokenMemory(FakeMemory):
        def persist_run_context(self, command, success):
            raise OSError("read-only file system")

    ctx = make_ctx(memory=BrokenMemory())
    state = _completed_state()
    CompleteStage(ctx).execute(state)
    assert state.verification_passed


def test_missing_verifier_is_reported():
    ctx = make_ctx(verifier=None)
    state = _completed_state()
    state.set_tool_call_results([ToolCallSummary.of("mouse_click", "ok", False)], has_visual=True)
    with pytest.raises(MissingCollaboratorError, match="complete: verifier not available"):
        CompleteStage(ctx).execute(state)
