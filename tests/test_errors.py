"""Tests for the exception hierarchy."""

from __future__ import annotations

from claude_fsd.errors import FSDError, MilestoneExecutionError, MilestoneExhaustedError


class TestMilestoneErrors:
    def test_execution_error_message(self):
        err = MilestoneExecutionError("m3", "unreachable")
        assert str(err) == "Milestone m3: unreachable"
        assert err.milestone_id == "m3"
        assert isinstance(err, FSDError)

    def test_exhausted_names_dependents(self):
        err = MilestoneExhaustedError("m1", 3, ["m2", "m4"])
        assert err.dependents == ["m2", "m4"]
        assert str(err) == "Milestone m1: failed after 3 iterations; required by m2, m4"
