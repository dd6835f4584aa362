"""Checkpoint persistence: .claude/fsd-state.json and fsd-progress.txt."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from .errors import PersistenceError, StateCorruptionError
from .models import Checkpoint, ProgressEntry
from .redaction import SecretRedactor

logger = logging.getLogger("fsd")

STATE_FILE = Path(".claude") / "fsd-state.json"
PROGRESS_FILE = Path(".claude") / "fsd-progress.txt"

RESUMABLE_WINDOW = timedelta(hours=24)


class StatePersistence:
    """Saves and restores the FSD checkpoint with atomic writes."""

    def __init__(self, project_dir: Path, redactor: SecretRedactor | None = None):
        self.project_dir = project_dir
        self.redactor = redactor or SecretRedactor()
        self.state_path = project_dir / STATE_FILE
        self.progress_path = project_dir / PROGRESS_FILE

    def save(self, checkpoint: Checkpoint) -> None:
        """Atomically write the checkpoint (write to tmp, then rename).

        Raises PersistenceError; callers decide whether that is fatal.
        """
        checkpoint.saved_at = datetime.now()
        tmp_path = self.state_path.with_suffix(".json.tmp")
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                f.write(checkpoint.model_dump_json(indent=2))
                f.write("\n")
            tmp_path.replace(self.state_path)
        except OSError as e:
            raise PersistenceError(f"Could not save checkpoint to {self.state_path}: {e}") from e

    def load_checkpoint(self) -> Checkpoint:
        """Read the checkpoint. Raises StateCorruptionError if it cannot be used."""
        try:
            with open(self.state_path) as f:
                raw = json.load(f)
        except FileNotFoundError:
            raise
        except (OSError, json.JSONDecodeError) as e:
            raise StateCorruptionError(f"Unreadable checkpoint {self.state_path}: {e}") from e

        if not isinstance(raw, dict) or raw.get("version") != 1:
            version = raw.get("version") if isinstance(raw, dict) else None
            raise StateCorruptionError(f"Unsupported checkpoint version: {version!r}")

        try:
            checkpoint = Checkpoint.model_validate(raw)
        except ValidationError as e:
            raise StateCorruptionError(f"Invalid checkpoint {self.state_path}: {e}") from e

        plan_ids = set(checkpoint.plan.milestone_ids)
        state = checkpoint.state
        unknown = [
            m for m in [*state.completed_milestones, *state.skipped_milestones]
            if m not in plan_ids
        ]
        if unknown:
            raise StateCorruptionError(
                f"Checkpoint references milestones not in its plan: {', '.join(unknown)}"
            )
        return checkpoint

    def load(self) -> Checkpoint | None:
        """Checkpoint if one exists and is valid, else None (a warning is logged)."""
        if not self.state_path.exists():
            return None
        try:
            return self.load_checkpoint()
        except FileNotFoundError:
            return None
        except StateCorruptionError as e:
            logger.warning(f"Ignoring checkpoint: {e}")
            return None

    def clear(self) -> bool:
        """Delete the checkpoint. Returns True if one was removed."""
        try:
            self.state_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(f"Could not delete checkpoint {self.state_path}: {e}") from e
        return True

    def exists(self) -> bool:
        return self.state_path.exists()

    def has_resumable(self, now: datetime | None = None) -> bool:
        """True when a valid checkpoint younger than 24 hours exists."""
        checkpoint = self.load()
        if checkpoint is None:
            return False
        return (now or datetime.now()) - checkpoint.saved_at < RESUMABLE_WINDOW

    def resume_info(self) -> str | None:
        """One-line description of the saved session, for display."""
        checkpoint = self.load()
        if checkpoint is None:
            return None
        state = checkpoint.state
        total = len(checkpoint.plan.milestones)
        return (
            f"{checkpoint.goal!r}: {len(state.completed_milestones)}/{total} milestones, "
            f"${state.total_cost_usd:.2f} spent, "
            f"saved {checkpoint.saved_at.strftime('%Y-%m-%d %H:%M')}"
        )

    def append_progress(self, entry: ProgressEntry) -> None:
        """Append a milestone outcome to the progress log."""
        try:
            self.progress_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.progress_path, "a") as f:
                header = (
                    f"\n=== Milestone {entry.milestone_id}: {entry.milestone_title} "
                    f"-- {entry.status.value} -- "
                    f"{entry.timestamp.strftime('%Y-%m-%d %H:%M')} ==="
                )
                f.write(f"{header}\n")
                f.write(f"{self.redactor(entry.summary)}\n")
                if entry.attempts:
                    f.write(f"- Attempts: {entry.attempts}\n")
                if entry.session_id:
                    f.write(f"- Session: {entry.session_id}\n")
                if entry.error:
                    f.write(f"- Error: {self.redactor(entry.error)}\n")
                f.write("\n")
        except OSError as e:
            logger.warning(f"Could not append to progress log {self.progress_path}: {e}")
