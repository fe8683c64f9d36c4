from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

log = logging.getLogger("runloop.anthropic_client")


class ModelTier(str, Enum):
    FAST = "fast"
    SMART = "smart"
    BRAIN = "brain"


DEFAULT_TIER_MODELS = {
    ModelTier.FAST: "claude-haiku-4-5-20251001",
    ModelTier.SMART: "claude-sonnet-4-5-20250929",
    ModelTier.BRAIN: "claude-opus-4-1-20250805",
}


@dataclass(frozen=True)
class ToolUse:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelResponse:
    text_blocks: tuple[str, ...] = ()
    tool_uses: tuple[ToolUse, ...] = ()
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    content: tuple[dict[str, Any], ...] = ()
    raw: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        return "\n".join(t for t in self.text_blocks if t).strip()

    @property
    def has_tool_use(self) -> bool:
        return bool(self.tool_uses)


class ModelClient(Protocol):
    def send(
        self,
        conversation: list[dict[str, Any]],
        system_prompt: str,
        tool_defs: list[dict[str, Any]],
        model_tier: ModelTier,
        max_tokens: int,
    ) -> ModelResponse: ...


class AnthropicClient:
    """
    Single-shot Anthropic Messages API client with tool use and round-robin
    API key load balancing. Retrying is the caller's job.
    """

    def __init__(
        self,
        api_key: str,
        *,
        tier_models: dict[ModelTier, str] | None = None,
        extra_api_keys: list[str] | None = None,
        base_url: str = "https://api.anthropic.com",
        anthropic_version: str = "2023-06-01",
        timeout_s: float = 60.0,
        temperature: float = 0.2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        # Build the key pool, deduplicated, order preserved
        all_keys: list[str] = []
        seen: set[str] = set()
        for k in [api_key] + (extra_api_keys or []):
            k = k.strip()
            if k and k not in seen:
                all_keys.append(k)
                seen.add(k)
        if not all_keys:
            raise ValueError("AnthropicClient needs at least one API key")
        self._api_keys = all_keys
        self._key_index = 0
        self._tier_models = {**DEFAULT_TIER_MODELS, **(tier_models or {})}
        self._base_url = base_url.rstrip("/")
        self._anthropic_version = anthropic_version
        self._timeout_s = timeout_s
        self._temperature = temperature
        self._transport = transport
        # key -> earliest usable time
        self._key_cooldowns: dict[str, float] = {}
        log.info("Anthropic client initialised with %d API key(s)", len(self._api_keys))

    def model_for(self, tier: ModelTier) -> str:
        return self._tier_models[tier]

    @property
    def _api_key(self) -> str:
        """Return the next usable key via round-robin, skipping rate-limited ones."""
        now = time.monotonic()
        n = len(self._api_keys)
        for _ in range(n):
            key = self._api_keys[self._key_index % n]
            if now >= self._key_cooldowns.get(key, 0.0):
                return key
            self._key_index = (self._key_index + 1) % n
        # All keys on cooldown: return the one with the soonest cooldown
        return min(self._api_keys, key=lambda k: self._key_cooldowns.get(k, 0.0))

    def _rotate_key(self) -> None:
        self._key_index = (self._key_index + 1) % len(self._api_keys)

    def _mark_key_rate_limited(self, key: str, cooldown_s: float) -> None:
        self._key_cooldowns[key] = time.monotonic() + cooldown_s
        log.info("Key ...%s rate-limited for %.1fs, rotating", key[-6:], cooldown_s)

    def send(
        self,
        conversation: list[dict[str, Any]],
        system_prompt: str,
        tool_defs: list[dict[str, Any]],
        model_tier: ModelTier,
        max_tokens: int,
    ) -> ModelResponse:
        payload: dict[str, Any] = {
            "model": self.model_for(model_tier),
            "max_tokens": max_tokens,
            "temperature": self._temperature,
            "system": system_prompt,
            "messages": conversation,
        }
        if tool_defs:
            payload["tools"] = tool_defs

        key = self._api_key
        headers = {
            "x-api-key": key,
            "anthropic-version": self._anthropic_version,
            "content-type": "application/json",
        }
        url = f"{self._base_url}/v1/messages"
        with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
            resp = client.post(url, headers=headers, json=payload)

        if resp.status_code in {429, 529}:
            self._mark_key_rate_limited(key, _retry_after_s(resp, default=5.0))
            self._rotate_key()
        resp.raise_for_status()
        return parse_response(resp.json())


def parse_response(data: dict[str, Any]) -> ModelResponse:
    texts: list[str] = []
    tool_uses: list[ToolUse] = []
    content: list[dict[str, Any]] = []
    for block in data.get("content", []) or []:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
            content.append({"type": "text", "text": block["text"]})
        elif kind == "tool_use":
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
            tool_uses.append(ToolUse(id=str(block.get("id", "")), name=str(block.get("name", "")), input=tool_input))
            content.append({"type": "tool_use", "id": block.get("id", ""), "name": block.get("name", ""), "input": tool_input})

    usage = data.get("usage") or {}
    return ModelResponse(
        text_blocks=tuple(texts),
        tool_uses=tuple(tool_uses),
        stop_reason=str(data.get("stop_reason") or ""),
        input_tokens=int(usage.get("input_tokens", 0) or 0),
        output_tokens=int(usage.get("output_tokens", 0) or 0),
        content=tuple(content),
        raw=data,
    )


def retry_after_s(exc: BaseException) -> float | None:
    """Seconds from a Retry-After header on an httpx status error, if present."""
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        value = exc.response.headers.get("retry-after")
        if value:
            try:
                return max(0.0, float(value))
            except ValueError:
                return None
    return None


def _retry_after_s(resp: httpx.Response, *, default: float) -> float:
    value = resp.headers.get("retry-after")
    if value:
        try:
            return max(default, float(value))
        except ValueError:
            pass
    return default


def image_block(png: bytes, media_type: str = "image/png") -> dict[str, Any]:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": media_type,
            "data": base64.b64encode(png).decode("ascii"),
        },
    }


def text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}
