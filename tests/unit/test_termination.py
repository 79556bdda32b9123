"""
Tests for termination rules.
"""

import pytest

from pdca_loop.termination import (
    DEFAULT_COMPLETION_PROMISE,
    PROMISE_LINES,
    detect_completion,
    extract_promise,
    last_promise,
    should_continue,
)
from pdca_loop.prompts import persona_prompt, render_preamble


class TestDetectCompletion:
    """Tests for detect_completion."""

    def test_empty_text(self):
        assert detect_completion("", "DONE") is False
        assert detect_completion(None, "DONE") is False
        assert detect_completion("   \n  ", "DONE") is False

    def test_exact_match_on_last_line(self):
        text = "did the work\nall green\n<promise>DONE</promise>"
        assert detect_completion(text, "DONE") is True

    def test_value_is_trimmed(self):
        assert detect_completion("<promise>  DONE \t</promise>", "DONE") is True

    def test_case_sensitive(self):
        assert detect_completion("<promise>done</promise>", "DONE") is False

    def test_partial_phrase_does_not_match(self):
        assert detect_completion("<promise>DONE SOON</promise>", "DONE") is False

    def test_marker_with_surrounding_text(self):
        assert detect_completion("final: <promise>DONE</promise> bye", "DONE") is True

    def test_only_last_lines_are_scanned(self):
        text = "<promise>DONE</promise>\n" + "\n".join(["filler"] * PROMISE_LINES)
        assert detect_completion(text, "DONE") is False

    def test_marker_just_inside_window(self):
        text = "<promise>DONE</promise>\n" + "\n".join(["filler"] * (PROMISE_LINES - 1))
        assert detect_completion(text, "DONE") is True

    def test_keeps_scanning_past_other_markers(self):
        text = "<promise>DONE</promise>\n<promise>OTHER</promise>"
        assert detect_completion(text, "DONE") is True

    def test_first_marker_on_a_line_wins(self):
        assert detect_completion("<promise>OTHER</promise><promise>DONE</promise>", "DONE") is False

    def test_unterminated_marker(self):
        assert detect_completion("<promise>DONE", "DONE") is False

    def test_default_promise(self):
        text = f"<promise>{DEFAULT_COMPLETION_PROMISE}</promise>"
        assert detect_completion(text, DEFAULT_COMPLETION_PROMISE) is True


class TestExtractPromise:
    """Tests for the promise helpers."""

    def test_extract(self):
        assert extract_promise("x <promise> A B </promise>") == "A B"

    def test_extract_blank_value(self):
        assert extract_promise("<promise>   </promise>") is None

    def test_extract_no_marker(self):
        assert extract_promise("nothing here") is None

    def test_last_promise_takes_last_occurrence(self):
        text = "<promise>FIRST</promise> then <promise>SECOND</promise>"
        assert last_promise(text) == "SECOND"

    def test_last_promise_keeps_inner_whitespace(self):
        assert last_promise("<promise>  ALL  DONE </promise>") == "ALL  DONE"

    def test_last_promise_ignores_marker_split_across_lines(self):
        assert last_promise("<promise>ALL\n  DONE</promise>") is None

    def test_last_promise_agrees_with_detect_completion(self):
        for text in ("<promise>ALL  DONE</promise>", "<promise>ALL\nDONE</promise>", "<promise>  </promise>"):
            assert (last_promise(text) == "ALL  DONE") == detect_completion(text, "ALL  DONE")

    def test_last_promise_none(self):
        assert last_promise(None) is None
        assert last_promise("no markers") is None


class TestShouldContinue:
    """Tests for the iteration policy."""

    @pytest.mark.parametrize("iteration,maximum,expected", [
        (0, 3, True),
        (2, 3, True),
        (3, 3, False),
        (4, 3, False),
        (1, 1, False),
    ])
    def test_bounded(self, iteration, maximum, expected):
        assert should_continue(iteration, maximum) is expected

    @pytest.mark.parametrize("maximum", [0, -1])
    def test_unbounded(self, maximum):
        assert should_continue(10_000, maximum) is True


class TestPrompts:
    """Tests for prompt rendering."""

    def test_preamble_carries_counters_and_promise(self):
        preamble = render_preamble(2, 5, "DONE")
        assert "(2 / 5)" in preamble
        assert "<promise>DONE</promise>" in preamble

    def test_preamble_unbounded(self):
        assert "(4 / ∞)" in render_preamble(4, 0, "DONE")

    def test_persona(self):
        assert persona_prompt(" architect ") == (
            "Deploy architect persona to activate and maintain persistence "
            "throughout the entire workflow."
        )
