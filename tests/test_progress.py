"""Tests for bounded progress feedback and prompt assembly."""

import pytest

from rwl.progress import ProgressEntry, ProgressTracker, format_log_entry
from rwl.prompt_builder import NO_FEEDBACK, PromptBuilder


def _entry(cycle, summary="validation failed", errors=None, passed=False):
    return ProgressEntry(
        cycle=cycle,
        promise_found=False,
        validation_passed=passed,
        gates_passed=True,
        summary=summary,
        errors=errors or [],
    )


# =============================================================================
# TESTS - Log entry format
# =============================================================================

class TestFormatLogEntry:

    def test_fields(self):
        text = format_log_entry(_entry(3, errors=["E   boom"]))
        assert text.startswith("## Cycle 3\n")
        assert "Validation: FAILED" in text
        assert "Promise: NOT FOUND" in text
        assert "Gates: PASSED" in text
        assert "Summary: validation failed" in text
        assert "Errors:\n  E   boom" in text

    def test_no_errors_section_when_clean(self):
        text = format_log_entry(_entry(1, summary="complete", passed=True))
        assert "Validation: PASSED" in text
        assert "Errors:" not in text

    def test_action_outputs_section(self):
        entry = _entry(2)
        entry.outputs = ["action 1 (ReadFile notes.txt):", "  hello"]
        text = format_log_entry(entry)
        assert "Actions:\n  action 1 (ReadFile notes.txt):\n    hello" in text
        assert ProgressEntry.from_dict(entry.to_dict()).outputs == entry.outputs

    def test_output_lines_are_capped(self):
        tracker = ProgressTracker(max_chars=None)
        entry = _entry(1)
        entry.outputs = [f"line {i}" for i in range(100)]
        tracker.append(entry)
        outputs = tracker.entries[0].outputs
        assert outputs[-1] == "... 60 more output line(s)"
        assert len(outputs) == 41


# =============================================================================
# TESTS - Eviction
# =============================================================================

class TestEviction:
    """Oldest entries go first; the latest entry is never dropped."""

    def test_max_entries(self):
        tracker = ProgressTracker(max_entries=3, max_chars=None)
        for cycle in range(1, 6):
            tracker.append(_entry(cycle))
        assert [e.cycle for e in tracker.entries] == [3, 4, 5]
        assert tracker.evicted == 2

    def test_max_chars(self):
        tracker = ProgressTracker(max_entries=None, max_chars=400)
        for cycle in range(1, 11):
            tracker.append(_entry(cycle, summary="x" * 50))
        assert len(tracker.render()) <= 400
        assert tracker.entries[-1].cycle == 10
        assert [e.cycle for e in tracker.entries] == sorted(e.cycle for e in tracker.entries)

    def test_oversized_latest_entry_is_kept(self):
        tracker = ProgressTracker(max_entries=5, max_chars=50)
        tracker.append(_entry(1))
        tracker.append(_entry(2, summary="y" * 500))
        assert len(tracker) == 1
        assert tracker.entries[0].cycle == 2

    def test_error_lines_are_capped(self):
        tracker = ProgressTracker(max_entries=5, max_chars=None)
        tracker.append(_entry(1, errors=[f"line {i}" for i in range(30)]))
        errors = tracker.entries[0].errors
        assert len(errors) == 21
        assert errors[-1] == "... 10 more error line(s)"

    def test_rejects_older_cycle(self):
        tracker = ProgressTracker()
        tracker.append(_entry(2))
        with pytest.raises(ValueError, match="older"):
            tracker.append(_entry(1))

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            ProgressTracker(max_entries=0)
        with pytest.raises(ValueError):
            ProgressTracker(max_chars=0)

    def test_restore_applies_limits(self):
        source = ProgressTracker(max_entries=None, max_chars=None)
        for cycle in range(1, 6):
            source.append(_entry(cycle))
        restored = ProgressTracker.from_list(source.to_list(), max_entries=2, max_chars=None)
        assert [e.cycle for e in restored.entries] == [4, 5]


# =============================================================================
# TESTS - Prompt builder
# =============================================================================

class TestPromptBuilder:

    def test_first_cycle_has_placeholder_feedback(self):
        message = PromptBuilder("Build a CLI", "<promise>DONE</promise>").build(ProgressTracker())
        assert "Build a CLI" in message
        assert "<promise>DONE</promise>" in message
        assert NO_FEEDBACK in message

    def test_feedback_is_rendered(self):
        tracker = ProgressTracker()
        tracker.append(_entry(1, errors=["E   assert False"]))
        message = PromptBuilder("task", "TOKEN").build(tracker)
        assert "## Cycle 1" in message
        assert "E   assert False" in message

    def test_custom_template_and_literal_braces(self):
        template = "T={{task}} S={{completion_signal}} F={{feedback}}"
        message = PromptBuilder("use {{feedback}} literally", "TOKEN", template=template).build(
            ProgressTracker()
        )
        assert message.startswith("T=use {{feedback}} literally ")
        assert "S=TOKEN" in message
        assert message.endswith(f"F={NO_FEEDBACK}")

    def test_message_is_independent_of_earlier_messages(self):
        """Same tracker state in, same message out."""
        tracker = ProgressTracker()
        tracker.append(_entry(1))
        builder = PromptBuilder("task", "TOKEN")
        assert builder.build(tracker) == builder.build(tracker)
