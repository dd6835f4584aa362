"""Detect file system changes made by an agent attempt."""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger("fsd")

SKIP_DIRS = {
    "node_modules", ".git", "dist", "build", ".next", ".turbo", ".cache",
    ".venv", "venv", "__pycache__", ".claude",
}

SENSITIVE_MARKERS = (".env", ".ssh", ".aws", "credentials", "secret", "token", "password")


@dataclass
class ChangeReport:
    modified: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    sensitive: list[str] = field(default_factory=list)

    @property
    def env_modified(self) -> bool:
        return any(".env" in Path(p).name for p in [*self.modified, *self.created])

    @property
    def claude_md_modified(self) -> bool:
        return any(Path(p).name == "CLAUDE.md" for p in self.modified)

    def warnings(self) -> list[str]:
        warnings = []
        if self.env_modified:
            warnings.append("Environment files were modified (.env)")
        if self.claude_md_modified:
            warnings.append("CLAUDE.md was modified - please review changes")
        if self.sensitive:
            warnings.append(f"Sensitive files accessed: {', '.join(self.sensitive[:3])}")
        if self.deleted:
            warnings.append(f"Files deleted: {', '.join(self.deleted[:5])}")
        return warnings


def take_snapshot(project_dir: Path) -> dict[str, str]:
    """Map of project-relative path -> md5 of contents."""
    snapshot: dict[str, str] = {}
    for root, dirs, files in os.walk(project_dir):
        dirs[:] = [d for d in dirs if d not in SKIP_DIRS]
        for name in files:
            path = Path(root) / name
            try:
                digest = hashlib.md5(path.read_bytes()).hexdigest()
            except OSError:
                # Locked or vanished mid-walk
                continue
            snapshot[str(path.relative_to(project_dir))] = digest
    return snapshot


def _is_sensitive(path: str) -> bool:
    lowered = path.lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


def analyze_changes(before: dict[str, str], after: dict[str, str]) -> ChangeReport:
    report = ChangeReport()
    for path, digest in before.items():
        after_digest = after.get(path)
        if after_digest is None:
            report.deleted.append(path)
        elif after_digest != digest:
            report.modified.append(path)
        else:
            continue
        if _is_sensitive(path):
            report.sensitive.append(path)

    for path in after:
        if path not in before:
            report.created.append(path)
            if _is_sensitive(path):
                report.sensitive.append(path)
    return report
