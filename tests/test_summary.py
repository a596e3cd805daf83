"""Tests for execution summaries and the backoff policy."""

import pytest

from opensprint.core.summary import (
    BACKOFF_FAILURE_THRESHOLD,
    BLOCK_REASON_CODING_FAILURE,
    ExecutionSummary,
    build_execution_summary,
    compact_text,
    describe_decision,
    evaluate_failure,
)
from opensprint.db.models import TaskStatus


class TestCompactText:
    def test_collapses_whitespace(self):
        assert compact_text("  a\n\n b\t c  ") == "a b c"

    def test_truncates_with_ellipsis(self):
        text = compact_text("x" * 600)
        assert len(text) == 500
        assert text.endswith("...")

    def test_short_text_untouched(self):
        assert compact_text("done", limit=10) == "done"

    def test_empty(self):
        assert compact_text(None) == ""


class TestExecutionSummary:
    def test_build(self):
        summary = build_execution_summary(
            2, "requeued", "tests failed", failure_type="agent_crash", at="2026-01-01T00:00:00"
        )
        assert summary.to_dict() == {
            "at": "2026-01-01T00:00:00",
            "attempt": 2,
            "outcome": "requeued",
            "phase": "coding",
            "summary": "tests failed",
            "failureType": "agent_crash",
            "blockReason": None,
        }

    def test_unknown_outcome(self):
        with pytest.raises(ValueError, match="Unknown outcome"):
            build_execution_summary(1, "exploded", "")

    def test_from_dict_reads_stored_summary(self):
        stored = build_execution_summary(1, "blocked", "gave up", block_reason="Coding Failure")
        assert ExecutionSummary.from_dict(stored.to_dict()) == stored

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "summary",
            {"at": "now", "attempt": "1", "outcome": "success", "phase": "coding", "summary": ""},
            {"attempt": 1, "outcome": "success", "phase": "coding", "summary": ""},
        ],
    )
    def test_from_dict_rejects_malformed(self, value):
        assert ExecutionSummary.from_dict(value) is None


class TestBackoff:
    def test_below_threshold_requeues(self):
        decision = evaluate_failure(priority=2, failure_count=0)
        assert decision.outcome == "requeued"
        assert decision.status == TaskStatus.OPEN
        assert decision.priority == 2
        assert decision.failure_count == 1

    def test_three_failures_demote(self):
        priority, count = 2, 0
        for _ in range(BACKOFF_FAILURE_THRESHOLD):
            decision = evaluate_failure(priority, count)
            priority, count = decision.priority, decision.failure_count
        assert decision.outcome == "demoted"
        assert priority == 3
        assert count == 0

    def test_blocks_at_max_priority(self):
        priority, count = 4, 0
        for _ in range(BACKOFF_FAILURE_THRESHOLD):
            decision = evaluate_failure(priority, count)
            priority, count = decision.priority, decision.failure_count
        assert decision.status == TaskStatus.BLOCKED
        assert decision.block_reason == BLOCK_REASON_CODING_FAILURE
        assert priority == 4
        assert count == 0

    def test_task_fields_release_assignee(self):
        fields = evaluate_failure(1, 0).task_fields()
        assert fields["assignee"] == ""
        assert fields["status"] == TaskStatus.OPEN

    def test_describe(self):
        assert describe_decision(evaluate_failure(1, 2), 3) == "Demoted to priority 2"
        assert "1/3" in describe_decision(evaluate_failure(1, 0), 1)
