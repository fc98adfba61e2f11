"""Tests for Director directive classification and operator input prefixes."""

import pytest

from tandem.cognitive import (
    DirectiveKind,
    WorkerRequest,
    extract_model_hint,
    is_finished,
    parse_directive,
    parse_operator_input,
)

# ---------------------------------------------------------------------------
# Completion marker
# ---------------------------------------------------------------------------

FINISHED_TEXTS = [
    "**DONE**",
    "__DONE__",
    "_DONE_",
    "DONE",
    "DONE.",
    "DONE!",
    "  DONE  ",
    "Some text\nDONE",
    "Tell worker: do something\n\nDONE",
    "\n\n\nDONE",
    "\t\tDONE\t\t",
    "Text here\n    DONE    ",
    "Line 1\nLine 2\nLine 3\nLine 4\nDONE",
    "The analysis is complete.\n\n**DONE**",
]

NOT_FINISHED_TEXTS = [
    "Done",
    "done",
    "This is not DONE yet",
    "We need to get this DONE",
    "When this is DONE, we can continue",
    "Is it DONE? No, not yet.",
    "DONE is what we need to achieve",
    "DONE\nBut we need more work",
    "DONE_WITH_UNDERSCORES",
    "TODO: DONE items",
    "Status: DONE (pending review)",
    "Tell worker: Fix the bug in line 42\n\nAfter that we can mark this as DONE for now.",
    "Let me check if this is done...\nTell worker: Run the tests",
    "All tasks completed successfully.\n\nDone!",
]


class TestIsFinished:
    @pytest.mark.parametrize("text", FINISHED_TEXTS)
    def test_marker_detected(self, text):
        assert is_finished(text) is True

    @pytest.mark.parametrize("text", NOT_FINISHED_TEXTS)
    def test_prose_not_detected(self, text):
        assert is_finished(text) is False

    def test_only_last_three_lines_considered(self):
        assert is_finished("**DONE**\nline a\nline b\nline c") is False
        assert is_finished("line a\nline b\n**DONE**") is True

    def test_emphasis_inside_a_line_is_not_a_marker(self):
        assert is_finished("line a\n**DONE** so far\nline c") is False
        assert is_finished("Set STATUS_DONE_FLAG") is False
        assert is_finished("rename it to __DONE__ later") is False


# ---------------------------------------------------------------------------
# parse_directive
# ---------------------------------------------------------------------------


class TestParseDirective:
    def test_tell_worker_marker(self):
        directive = parse_directive("Tell worker: create file foo.txt")
        assert directive.kind is DirectiveKind.DELEGATE
        assert directive.instruction == "create file foo.txt"
        assert directive.reset is False

    def test_tell_worker_case_insensitive_and_multiline(self):
        directive = parse_directive("Plan first.\n\nTELL WORKER:\n1. read a\n2. edit b")
        assert directive.kind is DirectiveKind.DELEGATE
        assert directive.instruction == "1. read a\n2. edit b"

    def test_empty_tell_worker_needs_correction(self):
        directive = parse_directive("Tell worker:   ")
        assert directive.kind is DirectiveKind.NEEDS_CORRECTION

    def test_prose_needs_correction(self):
        directive = parse_directive("I think we should look at the parser next.")
        assert directive.kind is DirectiveKind.NEEDS_CORRECTION
        assert not directive.is_delegation

    def test_done_wins_over_delegation(self):
        directive = parse_directive("Tell worker: do something\n\nDONE")
        assert directive.kind is DirectiveKind.FINISHED

    def test_done_inside_identifier_still_delegates(self):
        directive = parse_directive("Tell worker: set STATUS_DONE_FLAG = True in config.py")
        assert directive.kind is DirectiveKind.DELEGATE
        assert directive.instruction == "set STATUS_DONE_FLAG = True in config.py"

    def test_bold_done_mid_instruction_still_delegates(self):
        directive = parse_directive("Next step.\nTell worker: mark the item **DONE** in TODO.md, then run tests")
        assert directive.kind is DirectiveKind.DELEGATE
        assert directive.instruction.startswith("mark the item **DONE**")

    def test_done_wins_over_requested_worker(self):
        directive = parse_directive("All good.\nDONE", WorkerRequest("more", reset=True))
        assert directive.kind is DirectiveKind.FINISHED

    def test_call_worker_request_resets(self):
        request = WorkerRequest("write tests", reset=True, model="haiku", system_prompt="Be brief")
        directive = parse_directive("Delegating.", request)
        assert directive.kind is DirectiveKind.DELEGATE
        assert directive.reset is True
        assert directive.model_hint == "haiku"
        assert directive.system_prompt == "Be brief"

    def test_tell_worker_request_continues(self):
        directive = parse_directive("", WorkerRequest("now run them", reset=False))
        assert directive.kind is DirectiveKind.CONTINUE_ACTOR
        assert directive.instruction == "now run them"

    def test_requested_worker_beats_text_marker(self):
        directive = parse_directive("Tell worker: from text", WorkerRequest("from tool", reset=False))
        assert directive.instruction == "from tool"

    def test_model_hint_from_text(self):
        directive = parse_directive("Use haiku for this.\nTell worker: list files")
        assert directive.model_hint == "haiku"


class TestExtractModelHint:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("use opus", "opus"),
            ("Use Sonnet please", "sonnet"),
            ("model: haiku", "haiku"),
            ("model:opus", "opus"),
            ("use sonnet, then use opus", "sonnet"),
            ("no hint here", None),
            ("reuse opus", None),
        ],
    )
    def test_hints(self, text, expected):
        assert extract_model_hint(text) == expected


# ---------------------------------------------------------------------------
# Operator prefixes
# ---------------------------------------------------------------------------


class TestParseOperatorInput:
    def test_plain_instruction(self):
        op = parse_operator_input("  fix the build  ")
        assert op.instruction == "fix the build"
        assert op.add_rounds == 0
        assert op.set_rounds is None
        assert op.compact is False

    def test_add_rounds_accumulate(self):
        op = parse_operator_input("[r+2][r+3] keep going")
        assert op.add_rounds == 5
        assert op.instruction == "keep going"

    def test_set_resets_earlier_add(self):
        op = parse_operator_input("[r+2] [r=4] [r+1] go")
        assert op.set_rounds == 4
        assert op.add_rounds == 1

    def test_compact_prefix(self):
        op = parse_operator_input("[compact]")
        assert op.compact is True
        assert op.instruction == ""

    def test_prefix_must_lead(self):
        op = parse_operator_input("please [r+5]")
        assert op.add_rounds == 0
        assert op.instruction == "please [r+5]"
