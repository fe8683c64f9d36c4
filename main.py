from __future__ import annotations

import argparse
import json
import os
import sys

from dotenv import load_dotenv

from runloop.anthropic_client import AnthropicClient, ModelTier
from runloop.capture import ScreenCapturer
from runloop.events import Callbacks, ChatMessage, LifecycleState
from runloop.kill_switch import KillSwitch
from runloop.logging_setup import setup_logging
from runloop.memory import RunMemory
from runloop.orchestrator import OrchestratorConfig, OutcomeKind, create_run
from runloop.ui_tree import default_ui_tree


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="runloop: perceive/plan/act agent loop for desktop automation",
        epilog="The command line always runs with the dry-run executor: tool calls are logged, "
        "remember/recall use the memory file, and nothing else touches the machine.",
    )
    p.add_argument("--command", required=True, help="What you want the agent to accomplish.")
    p.add_argument("--max-iterations", type=int, default=50)
    p.add_argument("--max-tokens", type=int, default=4096)
    p.add_argument("--verification-threshold", type=int, default=60)
    p.add_argument("--monitor", type=int, default=1, help="mss monitor index (1=primary).")
    p.add_argument("--screenshot-max-width", type=int, default=1280)
    p.add_argument("--temperature", type=float, default=0.2)
    p.add_argument("--base-url", default=os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com"))
    p.add_argument("--anthropic-version", default=os.getenv("ANTHROPIC_VERSION", "2023-06-01"))
    p.add_argument("--log-level", default=os.getenv("RUNLOOP_LOG_LEVEL", "INFO"))
    p.add_argument("--memory", default=os.getenv("RUNLOOP_MEMORY_PATH", ".runloop_memory.json"), help="Path to run memory JSON.")
    p.add_argument("--no-kill-switch", action="store_true", help="Do not install the Ctrl+Alt+Backspace hotkey.")
    return p


def parse_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def _tier_models() -> dict[ModelTier, str]:
    models: dict[ModelTier, str] = {}
    for tier in ModelTier:
        name = os.getenv(f"RUNLOOP_MODEL_{tier.value.upper()}", "").strip()
        if name:
            models[tier] = name
    return models


def _print_state(value: LifecycleState) -> None:
    print(f"[{value.value}]", file=sys.stderr)


def _print_message(msg: ChatMessage) -> None:
    print(f"{msg.role}: {msg.content}", file=sys.stderr)


def _ask(prompt: str) -> bool:
    try:
        return input(f"{prompt} [y/N] ").strip().lower() in {"y", "yes"}
    except EOFError:
        return False


def main(argv: list[str]) -> int:
    load_dotenv()
    args = parse_args(argv)
    setup_logging(args.log_level)

    api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
    if not api_key:
        print("Missing ANTHROPIC_API_KEY (set it in env or .env).", file=sys.stderr)
        return 2

    # Collect extra API keys for load balancing (ANTHROPIC_API_KEY_2, _3, …)
    extra_keys: list[str] = []
    for i in range(2, 20):
        k = os.getenv(f"ANTHROPIC_API_KEY_{i}", "").strip()
        if k:
            extra_keys.append(k)

    client = AnthropicClient(
        api_key=api_key,
        tier_models=_tier_models(),
        extra_api_keys=extra_keys,
        base_url=args.base_url,
        anthropic_version=args.anthropic_version,
        temperature=args.temperature,
    )

    cfg = OrchestratorConfig(
        max_iterations=args.max_iterations,
        max_tokens=args.max_tokens,
        verification_threshold=args.verification_threshold,
        dry_run=True,
    )

    ks = KillSwitch()
    if not args.no_kill_switch:
        ks.start()

    state, orchestrator = create_run(
        args.command,
        config=cfg,
        model=client,
        capturer=ScreenCapturer(monitor_index=args.monitor, max_width=args.screenshot_max_width),
        ui_tree=default_ui_tree(),
        memory=RunMemory.load(args.memory),
        callbacks=Callbacks(on_state_change=_print_state, on_message=_print_message, on_confirmation_needed=_ask),
        kill_switch=ks,
    )
    outcome = orchestrator.run(state)
    ks.stop()

    print(json.dumps(outcome.to_dict(), indent=2))
    if outcome.kind is OutcomeKind.COMPLETED:
        return 0 if outcome.passed else 1
    if outcome.kind is OutcomeKind.CANCELLED:
        return 130
    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
