import pytest

from runloop.anthropic_client import ModelTier
from runloop.conversation import Conversation
from runloop.errors import MissingCollaboratorError
from runloop.recover import RecoverStage
from runloop.recovery import (
    REPHRASE_GUIDANCE,
    UNDO_GUIDANCE,
    BrainConsult,
    FastSuggestion,
    RecoveryLadder,
    RecoveryRequest,
    TierResult,
    backtrack,
    force_complete,
    tier_label,
)

from fakes import FakeModel, make_ctx, make_shot, make_state, text_response


def _request(conv=None, screenshot=None):
    return RecoveryRequest(
        command="open notepad",
        stuck_reason="Last 3 screenshots are perceptually identical",
        iteration=4,
        screenshot=screenshot,
        completion_token="<task_complete/>",
        conversation=conv or Conversation("open notepad"),
    )


def _last_user_text(ctx):
    return ctx.conversation.messages()[-1]["content"][-1]["text"]


# ── tiers ───────────────────────────────────────────────────────────────────


def test_default_ladder_order():
    ladder = RecoveryLadder.default(None)
    assert len(ladder) == 5
    assert ladder.run(0, _request()).guidance == REPHRASE_GUIDANCE
    assert "<task_complete/>" in ladder.run(4, _request()).guidance
    assert [tier_label(i) for i in range(5)][2] == "Backtrack"
    assert tier_label(9) == "Unknown (9)"


def test_ladder_index_is_clamped():
    ladder = RecoveryLadder.default(None)
    assert ladder.run(99, _request()).guidance == force_complete(_request()).guidance
    assert ladder.run(-1, _request()).guidance == REPHRASE_GUIDANCE


def test_ladder_requires_five_tiers():
    with pytest.raises(ValueError):
        RecoveryLadder([force_complete])


def test_ladder_tier_is_replaceable():
    ladder = RecoveryLadder.default(None)
    ladder.replace(0, lambda req: TierResult(guidance=f"custom for {req.command}"))
    assert ladder.run(0, _request()).guidance == "custom for open notepad"


def test_fast_suggestion_uses_fast_model():
    model = FakeModel([text_response("Use the Start menu search instead.", tokens=(30, 12))])
    result = FastSuggestion(model)(_request())
    assert result.guidance == "Use the Start menu search instead."
    assert result.planning_tier is ModelTier.FAST
    assert (result.input_tokens, result.output_tokens) == (30, 12)
    assert model.tiers == [ModelTier.FAST]


def test_fast_suggestion_failure_falls_back_to_rephrase():
    result = FastSuggestion(FakeModel([RuntimeError("overloaded")]))(_request())
    assert result.guidance == REPHRASE_GUIDANCE
    assert result.error == "overloaded"


def test_backtrack_without_checkpoint_only_guides():
    assert backtrack(_request()).guidance == UNDO_GUIDANCE


def test_backtrack_rolls_conversation_back():
    conv = Conversation("open notepad")
    conv.mark_checkpoint(1)
    conv.add_guidance("stale")
    result = backtrack(_request(conv))
    assert result.guidance.startswith("The conversation was rolled back")
    assert len(conv.messages()[0]["content"]) == 1


def test_brain_consult_sends_screenshot():
    model = FakeModel([text_response("Close the dialog first.")])
    result = BrainConsult(model)(_request(screenshot=make_shot()))
    assert result.escalated_to_brain
    assert result.planning_tier is ModelTier.BRAIN
    assert result.guidance == "Close the dialog first."
    sent = model.calls[0]["conversation"][0]["content"]
    assert [b["type"] for b in sent] == ["text", "image"]


def test_brain_consult_failure_gives_no_guidance():
    result = BrainConsult(FakeModel([RuntimeError("timeout")]))(_request())
    assert result.guidance == ""
    assert result.escalated_to_brain
    assert result.error == "timeout"


# ── stage ───────────────────────────────────────────────────────────────────


def test_recover_runs_tier_and_advances():
    ctx = make_ctx()
    state = make_state()
    state.mark_stuck("Last 3 text responses are repeating")
    for _ in range(3):
        ctx.repetition.record_text("same")
    assert ctx.repetition.detect() is not None

    RecoverStage(ctx).execute(state)

    assert not state.is_stuck
    assert state.recovery_strategy_index == 1
    assert state.recovery_attempts == 1
    assert state.total_recovery_attempts == 1
    assert _last_user_text(ctx) == REPHRASE_GUIDANCE
    assert ctx.repetition.detect() is None
    assert not state.task_complete


def test_recover_applies_tier_outputs():
    model = FakeModel([text_response("Try the File menu.", tokens=(20, 8))])
    ctx = make_ctx(model=model)
    state = make_state()
    state.advance_recovery_strategy()
    state.mark_stuck("stuck")

    RecoverStage(ctx).execute(state)

    assert state.planning_tier is ModelTier.FAST
    assert state.total_input_tokens == 20
    assert _last_user_text(ctx) == "Try the File menu."
    assert state.recovery_strategy_index == 2


def test_recover_brain_tier_sets_escalation_flag():
    ctx = make_ctx(model=FakeModel([text_response("Look at the taskbar.")]))
    state = make_state()
    for _ in range(3):
        state.advance_recovery_strategy()
    state.mark_stuck("stuck")

    RecoverStage(ctx).execute(state)

    assert state.has_escalated_to_brain
    assert state.planning_tier is ModelTier.BRAIN


def test_recover_with_spent_budget_forces_completion():
    ctx = make_ctx()
    state = make_state(max_recovery_attempts=2)
    state.increment_recovery_attempts()
    state.increment_recovery_attempts()
    state.mark_stuck("stuck")
    before = len(ctx.conversation)

    RecoverStage(ctx).execute(state)

    assert state.task_complete and state.completion_forced
    assert state.completion_source == "recovery budget exhausted (2/2 this episode, 2/8 total)"
    assert not state.is_stuck
    assert state.recovery_attempts == 2
    assert len(ctx.conversation) == before


def test_recover_without_ladder_is_reported():
    ctx = make_ctx(recovery=None)
    state = make_state()
    state.mark_stuck("stuck")
    with pytest.raises(MissingCollaboratorError, match="recover: recovery not available"):
        RecoverStage(ctx).execute(state)
