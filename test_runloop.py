#!/usr/bin/env python
"""
Smoke test: verify the runloop components import and work together.

Runs under pytest, or directly with a printed summary.
"""

import io
import json
import sys


def _png() -> bytes:
    from PIL import Image

    out = io.BytesIO()
    Image.new("RGB", (32, 24), (240, 240, 240)).save(out, format="PNG")
    return out.getvalue()


def test_imports():
    print("=" * 50)
    print("Testing imports...")
    from runloop import (  # noqa: F401
        act,
        anthropic_client,
        capture,
        complete,
        conversation,
        evaluate,
        observe,
        orchestrator,
        perceive,
        plan,
        recover,
        recovery,
        run_state,
        stuck_detector,
        verifier,
    )
    from runloop.kill_switch import KillSwitch  # noqa: F401
    from runloop.ui_tree import default_ui_tree  # noqa: F401

    print("✓ All imports successful")


def test_conversation():
    print("\n" + "=" * 50)
    print("Testing conversation...")
    from runloop.capture import Screenshot
    from runloop.conversation import Conversation

    conv = Conversation("Open Notepad and type hello")
    conv.add_observation(iteration=1, screenshot=Screenshot(png=_png(), width=32, height=24), ui_summary="Notepad")
    messages = conv.messages()
    assert isinstance(messages, list) and messages
    assert messages[0]["role"] == "user"
    print("✓ Conversation builds messages")
    print(f"  Messages count: {len(messages)}")


def test_screen_capture():
    print("\n" + "=" * 50)
    print("Testing screen capture...")
    from runloop.capture import ScreenCaptureError, ScreenCapturer

    try:
        shot = ScreenCapturer().capture()
    except ScreenCaptureError as e:
        print(f"○ No display available ({e})")
        return
    assert shot.png.startswith(b"\x89PNG")
    print(f"✓ Screenshot: {shot.width}x{shot.height}, {len(shot.png):,} bytes PNG")


def test_ui_tree():
    print("\n" + "=" * 50)
    print("Testing UI tree...")
    from runloop.ui_tree import default_ui_tree

    summary = default_ui_tree().summary()
    assert isinstance(summary, str)
    print(f"✓ UI summary: {summary[:60] or '(none on this platform)'}")


def test_dry_run_executor():
    print("\n" + "=" * 50)
    print("Testing dry-run executor (no actual input)...")
    from runloop.events import Callbacks
    from runloop.tools import DryRunToolExecutor

    ex = DryRunToolExecutor()
    result = ex.execute("hotkey", "tu_0", {"keys": ["win", "r"]}, Callbacks())
    assert not result.is_error
    assert len(ex.calls) == 1
    print(f"✓ {result.result_text}")


def test_anthropic_client():
    print("\n" + "=" * 50)
    print("Testing Anthropic client setup...")
    from runloop.anthropic_client import AnthropicClient, ModelTier, parse_response

    client = AnthropicClient(api_key="sk-test", extra_api_keys=["sk-test-2"])
    assert client.model_for(ModelTier.SMART)
    resp = parse_response(
        {
            "content": [
                {"type": "text", "text": "Opening Run dialog"},
                {"type": "tool_use", "id": "tu_1", "name": "hotkey", "input": {"keys": ["win", "r"]}},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 12, "output_tokens": 3},
        }
    )
    assert resp.has_tool_use and resp.tool_uses[0].name == "hotkey"
    print("✓ Anthropic client initialized")
    print(f"  Model: {client.model_for(ModelTier.SMART)}")


def test_prompt_building():
    print("\n" + "=" * 50)
    print("Testing prompt building...")
    from runloop.prompt import build_system_prompt

    prompt = build_system_prompt(completion_token="<task_complete/>")
    assert "<task_complete/>" in prompt
    print(f"✓ System prompt: {len(prompt)} chars")


def test_kill_switch():
    print("\n" + "=" * 50)
    print("Testing kill switch...")
    from runloop.kill_switch import KillSwitch, KillSwitchConfig

    ks = KillSwitch(KillSwitchConfig(enabled=False))
    assert not ks.triggered
    ks.trigger()
    assert ks.triggered
    print("✓ Kill switch triggers")


def test_dry_run_loop():
    print("\n" + "=" * 50)
    print("Testing a dry run with a scripted model...")
    from runloop.anthropic_client import ModelResponse
    from runloop.orchestrator import OrchestratorConfig, OutcomeKind, create_run

    class ScriptedModel:
        def send(self, conversation, system_prompt, tool_defs, model_tier, max_tokens):
            return ModelResponse(text_blocks=("Nothing to click. <task_complete/>",), stop_reason="end_turn")

    state, orch = create_run("say hello", config=OrchestratorConfig(dry_run=True), model=ScriptedModel())
    outcome = orch.run(state)
    assert outcome.kind is OutcomeKind.COMPLETED
    print(json.dumps(outcome.to_dict()["snapshot"], indent=2)[:200])
    print("✓ Dry run completed")


def main():
    tests = [
        ("Imports", test_imports),
        ("Conversation", test_conversation),
        ("Screen Capture", test_screen_capture),
        ("UI Tree", test_ui_tree),
        ("Dry-run Executor", test_dry_run_executor),
        ("Anthropic Client", test_anthropic_client),
        ("Prompt Building", test_prompt_building),
        ("Kill Switch", test_kill_switch),
        ("Dry-run Loop", test_dry_run_loop),
    ]

    results = []
    for name, test_fn in tests:
        try:
            test_fn()
            results.append((name, True))
        except Exception as e:
            print(f"✗ {name} failed: {e!r}")
            results.append((name, False))

    print("\n" + "=" * 50)
    print("SUMMARY")
    print("=" * 50)
    passed = sum(1 for _, ok in results if ok)
    for name, ok in results:
        status = "✓ PASS" if ok else "✗ FAIL"
        print(f"  {status}: {name}")

    print(f"\n{passed}/{len(results)} tests passed")

    if passed == len(results):
        print("\n✓ All components working! Ready to run:")
        print('  python main.py --command "Your task here"')

    return 0 if passed == len(results) else 1


if __name__ == "__main__":
    sys.exit(main())
