import json

import httpx
import pytest

from runloop.anthropic_client import (
    DEFAULT_TIER_MODELS,
    AnthropicClient,
    ModelTier,
    image_block,
    parse_response,
    retry_after_s,
)

OK_BODY = {
    "content": [
        {"type": "text", "text": "Clicking Start"},
        {"type": "tool_use", "id": "toolu_1", "name": "mouse_click", "input": {"x": 10, "y": 700}},
    ],
    "stop_reason": "tool_use",
    "usage": {"input_tokens": 1500, "output_tokens": 42},
}


def _client(handler, **kwargs):
    return AnthropicClient(api_key="key-one", transport=httpx.MockTransport(handler), **kwargs)


def test_send_builds_request_and_parses_reply():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        seen["url"] = str(request.url)
        return httpx.Response(200, json=OK_BODY)

    client = _client(handler, tier_models={ModelTier.FAST: "my-fast-model"})
    resp = client.send(
        [{"role": "user", "content": [{"type": "text", "text": "hi"}]}],
        "system text",
        [{"name": "mouse_click", "description": "d", "input_schema": {"type": "object"}}],
        ModelTier.FAST,
        256,
    )

    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["headers"]["x-api-key"] == "key-one"
    assert seen["body"]["model"] == "my-fast-model"
    assert seen["body"]["max_tokens"] == 256
    assert seen["body"]["system"] == "system text"
    assert seen["body"]["tools"][0]["name"] == "mouse_click"
    assert resp.text == "Clicking Start"
    assert resp.tool_uses[0].input == {"x": 10, "y": 700}
    assert (resp.input_tokens, resp.output_tokens) == (1500, 42)


def test_no_tools_key_when_tool_list_empty():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"content": [], "usage": {}})

    _client(handler).send([], "s", [], ModelTier.SMART, 10)
    assert "tools" not in bodies[0]
    assert bodies[0]["model"] == DEFAULT_TIER_MODELS[ModelTier.SMART]


def test_rate_limit_rotates_key_and_raises():
    keys = []

    def handler(request):
        keys.append(request.headers["x-api-key"])
        if len(keys) == 1:
            return httpx.Response(429, headers={"retry-after": "12"}, json={"error": {}})
        return httpx.Response(200, json=OK_BODY)

    client = _client(handler, extra_api_keys=["key-two", "key-one"])
    with pytest.raises(httpx.HTTPStatusError) as info:
        client.send([], "s", [], ModelTier.SMART, 10)
    assert retry_after_s(info.value) == 12.0

    client.send([], "s", [], ModelTier.SMART, 10)
    assert keys == ["key-one", "key-two"]


def test_needs_a_key():
    with pytest.raises(ValueError):
        AnthropicClient(api_key="  ")


def test_parse_response_skips_unknown_blocks():
    resp = parse_response({"content": [{"type": "thinking", "thinking": "..."}, "junk"], "stop_reason": "end_turn"})
    assert resp.text == ""
    assert not resp.has_tool_use
    assert resp.content == ()


def test_image_block_is_base64():
    block = image_block(b"\x89PNG")
    assert block["source"] == {"type": "base64", "media_type": "image/png", "data": "iVBORw=="}


def test_retry_after_absent():
    assert retry_after_s(RuntimeError("x")) is None
