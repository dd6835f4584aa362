"""Git protection for FSD sessions.

- Work happens on a dedicated fsd/ branch, never on the user's branch
- A pre-push hook blocks every push until the session ends
- On completion a human-readable summary with next steps is recorded
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path

from .commands import CommandResult, CommandRunner, SubprocessRunner
from .errors import GitProtectionError
from .models import GitState
from .prompts import GIT_RULES_TEMPLATE

logger = logging.getLogger("fsd")

PROTECTED_BRANCHES = {"main", "master", "develop", "production", "prod"}

HOOK_MARKER = "# FSD Mode Pre-Push Hook"

PRE_PUSH_HOOK = f"""\
#!/bin/sh
{HOOK_MARKER} - blocks pushes during autonomous execution.
# Installed by fsd and removed when the session completes.

echo ""
echo "GIT PUSH BLOCKED"
echo "FSD mode is active. Review the changes and push manually once it completes."
echo ""
exit 1
"""

SUMMARY_FILE = Path(".claude") / "fsd-session-summary.md"


def is_protected_branch(branch: str) -> bool:
    return branch.lower() in PROTECTED_BRANCHES


def branch_name_for(goal: str, now: datetime | None = None) -> str:
    """fsd/<slug of goal>-<YYYYMMDDTHHMM>."""
    stamp = (now or datetime.now()).strftime("%Y%m%dT%H%M")
    slug = re.sub(r"[^a-z0-9]+", "-", goal.lower())[:30].strip("-")
    return f"fsd/{slug or 'session'}-{stamp}"


class GitProtectionGuard:
    """Creates the isolated branch, blocks pushes, and records the session summary."""

    def __init__(
        self,
        project_dir: Path,
        runner: CommandRunner | None = None,
        allow_unprotected: bool = False,
    ):
        self.project_dir = project_dir
        self.runner = runner or SubprocessRunner("git")
        self.allow_unprotected = allow_unprotected
        self._hook_installed = False

    async def _git(self, *args: str) -> CommandResult:
        return await self.runner.run(list(args), cwd=self.project_dir)

    async def is_repo(self) -> bool:
        if not self.runner.check_installed():
            return False
        result = await self._git("rev-parse", "--is-inside-work-tree")
        return result.success and result.output == "true"

    async def current_branch(self) -> str:
        result = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        return result.output if result.success else "unknown"

    async def establish(self, goal: str) -> GitState | None:
        """Create and switch to the FSD branch. Raises GitProtectionError on failure.

        Returns None only when the project is not a git repository and
        unprotected runs are explicitly allowed.
        """
        if not await self.is_repo():
            if self.allow_unprotected:
                logger.warning("Not a git repository -- git protection disabled")
                return None
            raise GitProtectionError(
                f"{self.project_dir} is not a git repository; "
                "refusing to run unprotected (set allow_unprotected = true to override)"
            )

        original = await self.current_branch()
        fsd_branch = branch_name_for(goal)
        logger.info(f"Current branch: {original}")

        status = await self._git("status", "--porcelain")
        if status.success and status.output:
            logger.warning("You have uncommitted changes. Consider committing first.")

        created = await self._git("checkout", "-b", fsd_branch)
        if not created.success:
            raise GitProtectionError(f"Failed to create branch {fsd_branch}: {created.output}")
        logger.info(f"Switched to FSD branch: {fsd_branch}")

        await self._install_hook()
        return GitState(original_branch=original, fsd_branch=fsd_branch)

    async def restore(self, git_state: GitState) -> None:
        """Return to the session's branch when resuming."""
        current = await self.current_branch()
        if current != git_state.fsd_branch:
            logger.info(f"Switching to FSD branch: {git_state.fsd_branch}")
            result = await self._git("checkout", git_state.fsd_branch)
            if not result.success:
                raise GitProtectionError(
                    f"Failed to check out {git_state.fsd_branch}: {result.output}"
                )
        await self._install_hook()

    def rules(self, git_state: GitState | None) -> str:
        if git_state is None:
            return ""
        return GIT_RULES_TEMPLATE.format(
            fsd_branch=git_state.fsd_branch,
            protected=", ".join(sorted(PROTECTED_BRANCHES)),
        )

    async def finalize(self, git_state: GitState) -> str:
        """Remove the push block and write the session summary. Returns the summary."""
        await self.release()

        commits = await self._git("rev-list", "--count", f"{git_state.original_branch}..HEAD")
        diffstat = await self._git("diff", "--stat", git_state.original_branch)
        summary = "\n".join([
            "# FSD Session Summary",
            "",
            f"FSD branch: {git_state.fsd_branch}",
            f"Original branch: {git_state.original_branch}",
            f"Commits: {commits.output if commits.success else '0'}",
            "",
            "Changed files:",
            diffstat.output if diffstat.success and diffstat.output else "No changes",
            "",
            "Next steps:",
            f"  1. Review changes: git diff {git_state.original_branch}",
            f"  2. If satisfied, merge: git checkout {git_state.original_branch} "
            f"&& git merge {git_state.fsd_branch}",
            f"  3. Push: git push origin {git_state.original_branch}",
            f"  4. Clean up: git branch -d {git_state.fsd_branch}",
        ])

        path = self.project_dir / SUMMARY_FILE
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(summary + "\n")
        except OSError as e:
            logger.warning(f"Could not write session summary to {path}: {e}")
        return summary

    async def release(self) -> None:
        """Remove the pre-push hook, restoring any hook it replaced."""
        if not self._hook_installed:
            return
        hooks_dir = await self._hooks_dir()
        self._hook_installed = False
        if hooks_dir is None:
            return

        hook = hooks_dir / "pre-push"
        backup = hooks_dir / "pre-push.fsd-backup"
        try:
            if not hook.exists() or HOOK_MARKER not in hook.read_text():
                return
            if backup.exists():
                hook.write_text(backup.read_text())
                hook.chmod(0o755)
                backup.unlink()
            else:
                hook.unlink()
        except OSError as e:
            logger.warning(f"Failed to remove pre-push hook: {e}")

    async def _install_hook(self) -> None:
        hooks_dir = await self._hooks_dir()
        if hooks_dir is None:
            logger.warning("Could not locate git hooks directory; push is blocked by prompt rules only")
            return

        hook = hooks_dir / "pre-push"
        try:
            existing = hook.read_text() if hook.exists() else ""
            if HOOK_MARKER not in existing:
                if existing:
                    (hooks_dir / "pre-push.fsd-backup").write_text(existing)
                hook.write_text(PRE_PUSH_HOOK)
                hook.chmod(0o755)
        except OSError as e:
            logger.warning(f"Could not install pre-push hook: {e}")
            return

        self._hook_installed = True
        logger.info("Pre-push hook installed (git push blocked during FSD)")

    async def _hooks_dir(self) -> Path | None:
        result = await self._git("rev-parse", "--git-dir")
        if not result.success:
            return None
        git_dir = Path(result.output)
        if not git_dir.is_absolute():
            git_dir = self.project_dir / git_dir
        hooks_dir = git_dir / "hooks"
        try:
            hooks_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            return None
        return hooks_dir
