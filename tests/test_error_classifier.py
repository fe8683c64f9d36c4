import httpx
import pytest

from runloop.error_classifier import ErrorClass, classify, classify_message, classify_summaries
from runloop.run_state import ToolCallSummary


def _status_error(status: int) -> httpx.HTTPStatusError:
    req = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    resp = httpx.Response(status, request=req)
    return httpx.HTTPStatusError(f"HTTP {status}", request=req, response=resp)


@pytest.mark.parametrize("status", [429, 500, 503, 529])
def test_retryable_statuses_are_transient(status):
    assert classify(_status_error(status)) is ErrorClass.TRANSIENT


@pytest.mark.parametrize("status", [400, 401, 403, 404])
def test_client_statuses_are_permanent(status):
    assert classify(_status_error(status)) is ErrorClass.PERMANENT


def test_transport_errors_are_transient():
    assert classify(httpx.ConnectTimeout("slow")) is ErrorClass.TRANSIENT
    assert classify(TimeoutError()) is ErrorClass.TRANSIENT
    assert classify(ConnectionResetError("reset")) is ErrorClass.TRANSIENT


def test_permission_error_is_permanent():
    assert classify(PermissionError("nope")) is ErrorClass.PERMANENT


def test_message_patterns():
    assert classify_message("Rate limit hit") is ErrorClass.TRANSIENT
    assert classify_message("Element not found") is ErrorClass.PERMANENT
    assert classify_message("context length exceeded") is ErrorClass.PERMANENT
    assert classify_message("Loop detected in actions") is ErrorClass.STUCK
    assert classify_message("something odd happened") is ErrorClass.TRANSIENT


def test_batch_takes_most_severe_failure():
    batch = [
        ToolCallSummary.of("mouse_click", "ok", False),
        ToolCallSummary.of("mouse_click", "request timed out", True),
        ToolCallSummary.of("type_text", "screen is stuck in the same state", True),
    ]
    assert classify_summaries(batch) is ErrorClass.STUCK

    batch.append(ToolCallSummary.of("open_url", "permission denied", True))
    assert classify_summaries(batch) is ErrorClass.PERMANENT


def test_batch_without_failures_is_none():
    assert classify_summaries([]) is ErrorClass.NONE
    assert classify_summaries([ToolCallSummary.of("type_text", "timeout", False)]) is ErrorClass.NONE
