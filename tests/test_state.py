"""Tests for checkpoint persistence."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from claude_fsd.errors import StateCorruptionError
from claude_fsd.models import (
    Checkpoint,
    FSDConfig,
    FSDMode,
    FSDState,
    GitState,
    MilestoneStatus,
    Plan,
    ProgressEntry,
)
from claude_fsd.state import StatePersistence


def make_checkpoint(plan: Plan, **state_fields) -> Checkpoint:
    return Checkpoint(
        goal="Build a todo app",
        plan=plan,
        state=FSDState(mode=FSDMode.EXECUTING, **state_fields),
        config=FSDConfig(max_cost_usd=5.0),
        git_state=GitState(original_branch="main", fsd_branch="fsd/build-a-todo-app"),
    )


class TestSaveAndLoad:
    def test_round_trip(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        checkpoint = make_checkpoint(
            linear_plan,
            completed_milestones=["m1"],
            milestone_attempts={"m1": 1, "m2": 2},
            total_cost_usd=1.25,
            total_prompts=3,
            learnings=["Run install first"],
            agent_session_id="sess-9",
        )
        store.save(checkpoint)

        loaded = store.load_checkpoint()
        assert loaded.goal == "Build a todo app"
        assert loaded.plan == linear_plan
        assert loaded.state.completed_milestones == ["m1"]
        assert loaded.state.milestone_attempts == {"m1": 1, "m2": 2}
        assert loaded.state.total_cost_usd == 1.25
        assert loaded.state.learnings == ["Run install first"]
        assert loaded.state.agent_session_id == "sess-9"
        assert loaded.config.max_cost_usd == 5.0
        assert loaded.git_state.fsd_branch == "fsd/build-a-todo-app"

    def test_writes_under_claude_dir(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan))

        path = tmp_path / ".claude" / "fsd-state.json"
        assert path.exists()
        assert json.loads(path.read_text())["version"] == 1

    def test_atomic_write(self, tmp_path: Path, linear_plan: Plan):
        """No .tmp file remains after save."""
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan))

        assert not store.state_path.with_suffix(".json.tmp").exists()

    def test_save_overwrites(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan))
        store.save(make_checkpoint(linear_plan, completed_milestones=["m1", "m2"]))

        assert store.load_checkpoint().state.completed_milestones == ["m1", "m2"]

    def test_load_missing_returns_none(self, tmp_path: Path):
        assert StatePersistence(tmp_path).load() is None


class TestCorruption:
    def _write(self, tmp_path: Path, content: str) -> StatePersistence:
        store = StatePersistence(tmp_path)
        store.state_path.parent.mkdir(parents=True, exist_ok=True)
        store.state_path.write_text(content)
        return store

    def test_invalid_json(self, tmp_path: Path):
        store = self._write(tmp_path, "{not json")
        with pytest.raises(StateCorruptionError):
            store.load_checkpoint()
        assert store.load() is None

    def test_version_mismatch(self, tmp_path: Path, linear_plan: Plan):
        data = json.loads(make_checkpoint(linear_plan).model_dump_json())
        data["version"] = 2
        store = self._write(tmp_path, json.dumps(data))

        with pytest.raises(StateCorruptionError, match="version"):
            store.load_checkpoint()

    def test_schema_mismatch(self, tmp_path: Path):
        store = self._write(tmp_path, json.dumps({"version": 1, "goal": "x"}))
        with pytest.raises(StateCorruptionError):
            store.load_checkpoint()

    def test_completed_not_in_plan(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan, completed_milestones=["m1", "m9"]))

        with pytest.raises(StateCorruptionError, match="m9"):
            store.load_checkpoint()
        assert store.has_resumable() is False

    def test_skipped_not_in_plan(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan, skipped_milestones=["ghost"]))

        assert store.load() is None


class TestClearAndResumable:
    def test_clear(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan))

        assert store.exists() is True
        assert store.clear() is True
        assert store.exists() is False
        assert store.clear() is False

    def test_fresh_checkpoint_is_resumable(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan))
        assert store.has_resumable() is True

    def test_stale_checkpoint_is_not_resumable(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan))

        later = datetime.now() + timedelta(hours=25)
        assert store.has_resumable(now=later) is False

    def test_no_checkpoint_is_not_resumable(self, tmp_path: Path):
        assert StatePersistence(tmp_path).has_resumable() is False

    def test_resume_info(self, tmp_path: Path, linear_plan: Plan):
        store = StatePersistence(tmp_path)
        store.save(make_checkpoint(linear_plan, completed_milestones=["m1"], total_cost_usd=0.5))

        info = store.resume_info()
        assert "Build a todo app" in info
        assert "1/3 milestones" in info
        assert "$0.50" in info


class TestAppendProgress:
    def test_appends_entry(self, tmp_path: Path):
        store = StatePersistence(tmp_path)

        entry = ProgressEntry(
            timestamp=datetime(2026, 2, 19, 12, 0),
            milestone_id="m2",
            milestone_title="Add footer component",
            status=MilestoneStatus.COMPLETED,
            summary="Completed after QA",
            attempts=2,
            session_id="sess-456",
        )
        store.append_progress(entry)

        content = (tmp_path / ".claude" / "fsd-progress.txt").read_text()
        assert "Milestone m2" in content
        assert "Add footer component" in content
        assert "completed" in content
        assert "Attempts: 2" in content
        assert "sess-456" in content

    def test_appends_not_overwrites(self, tmp_path: Path):
        store = StatePersistence(tmp_path)
        for mid in ("m1", "m2"):
            store.append_progress(ProgressEntry(
                timestamp=datetime(2026, 2, 19, 12, 0),
                milestone_id=mid,
                milestone_title=f"Milestone {mid}",
                status=MilestoneStatus.FAILED,
                summary="Exhausted retries",
                error="Build failed",
            ))

        content = store.progress_path.read_text()
        assert "Milestone m1" in content
        assert "Milestone m2" in content
        assert content.count("Error: Build failed") == 2

    def test_error_and_summary_are_redacted(self, tmp_path: Path):
        store = StatePersistence(tmp_path)
        key = "sk-ant-api03-" + "q" * 40
        store.append_progress(ProgressEntry(
            timestamp=datetime(2026, 2, 19, 12, 0),
            milestone_id="m1",
            milestone_title="Payments",
            status=MilestoneStatus.FAILED,
            summary=f"Gave up with {key}",
            error=f"[critical] {key} printed in logs",
        ))

        content = store.progress_path.read_text()
        assert key not in content
        assert "Error: [critical] ***REDACTED*** printed in logs" in content
