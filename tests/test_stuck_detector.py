import pytest

from runloop.stuck_detector import WindowedRepetitionPolicy


def test_needs_a_full_window():
    p = WindowedRepetitionPolicy(window=3)
    p.record_screenshot(0xFF)
    p.record_screenshot(0xFF)
    assert p.detect() is None
    p.record_screenshot(0xFF)
    assert p.detect() == "Last 3 screenshots are perceptually identical"


def test_hashes_within_tolerance_count_as_same():
    p = WindowedRepetitionPolicy(window=2, hash_tolerance=2)
    p.record_screenshot(0b0000)
    p.record_screenshot(0b0011)
    assert p.detect() is not None

    p.reset()
    p.record_screenshot(0b0000)
    p.record_screenshot(0b0111)
    assert p.detect() is None


def test_changing_ui_tree_overrides_identical_pixels():
    p = WindowedRepetitionPolicy(window=2)
    for summary in ("Save dialog", "Save dialog - filename typed"):
        p.record_screenshot(42)
        p.record_ui_summary(summary)
    assert p.detect() is None


def test_repeating_text_is_detected():
    p = WindowedRepetitionPolicy(window=3)
    for text in ("Clicking  the button", "clicking the button", "CLICKING THE BUTTON"):
        p.record_text(text)
    assert p.detect() == "Last 3 text responses are repeating"


def test_empty_text_is_ignored():
    p = WindowedRepetitionPolicy(window=2)
    p.record_text("")
    p.record_text("")
    assert p.detect() is None


def test_reset_clears_history():
    p = WindowedRepetitionPolicy(window=2)
    p.record_text("same")
    p.record_text("same")
    assert p.detect() is not None
    p.reset()
    assert p.detect() is None


def test_window_must_be_at_least_two():
    with pytest.raises(ValueError):
        WindowedRepetitionPolicy(window=1)
