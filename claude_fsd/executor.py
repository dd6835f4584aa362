"""Milestone execution: one agent attempt plus automated verification."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .commands import run_shell
from .models import AttemptOutcome, Milestone
from .post_execution import analyze_changes, take_snapshot
from .prompts import build_milestone_prompt
from .redaction import SecretRedactor

if TYPE_CHECKING:
    from .reporters import OutputHandler
    from .runner import Invoker

logger = logging.getLogger("fsd")

# Output that means "this project has no such script", not "the check failed"
MISSING_SCRIPT_MARKERS = (
    "Missing script",
    "no such file or directory",
    "command not found",
    "ERR_PNPM_NO_SCRIPT",
)

# (substring in failing output, rule the agent should follow next time)
LEARNING_RULES: list[tuple[str, str]] = [
    ("Cannot find module", "Always verify imports exist before using them"),
    ("ModuleNotFoundError", "Always verify imports exist before using them"),
    ("is not assignable", "Check type compatibility before assignments"),
    ("ENOENT", "Verify file paths exist before referencing them"),
    ("mock", "Ensure all external dependencies are properly mocked in tests"),
]

MAX_CHECK_OUTPUT = 2000


@dataclass
class CheckResult:
    command: str
    passed: bool
    output: str = ""


async def run_verification(
    project_dir: Path,
    commands: list[str],
    timeout: float = 600.0,
) -> list[CheckResult]:
    """Run each verification command in turn. A missing script counts as passed."""
    results = []
    for command in commands:
        try:
            outcome = await run_shell(command, cwd=project_dir, timeout=timeout)
        except OSError as e:
            logger.debug(f"Check {command!r} could not start ({e}); treating as not applicable")
            results.append(CheckResult(command=command, passed=True))
            continue

        output = outcome.stdout + outcome.stderr
        if outcome.returncode == 127 or any(m in output for m in MISSING_SCRIPT_MARKERS):
            results.append(CheckResult(command=command, passed=True))
        elif outcome.success:
            results.append(CheckResult(command=command, passed=True))
        else:
            results.append(CheckResult(
                command=command, passed=False, output=output[-MAX_CHECK_OUTPUT:],
            ))
    return results


def learning_from_failure(errors: list[str]) -> str | None:
    """Derive a simple rule from failure output, if one applies."""
    text = "\n".join(errors)
    for marker, rule in LEARNING_RULES:
        if marker in text:
            return rule
    return None


class MilestoneExecutor:
    """Runs a single milestone attempt and verifies the result."""

    def __init__(
        self,
        invoker: Invoker,
        project_dir: Path,
        verify_commands: list[str] | None = None,
        verify_timeout: float = 600.0,
        reporter: OutputHandler | None = None,
        redactor: SecretRedactor | None = None,
    ):
        self.invoker = invoker
        self.project_dir = project_dir
        self.verify_commands = verify_commands or []
        self.verify_timeout = verify_timeout
        self.reporter = reporter
        self.redactor = redactor or SecretRedactor()

    def milestone_prompt(self, milestone: Milestone, learnings: list[str], rules: str = "") -> str:
        return build_milestone_prompt(milestone, learnings, rules)

    def retry_prompt(
        self,
        milestone: Milestone,
        errors: list[str],
        learnings: list[str],
        rules: str = "",
    ) -> str:
        """Retry prompt carrying the previous errors. Always redacted."""
        return self.redactor(build_milestone_prompt(milestone, learnings, rules, errors=errors))

    async def execute(
        self,
        milestone: Milestone,
        prompt: str,
        resume_session: str | None = None,
    ) -> AttemptOutcome:
        start = time.monotonic()
        loop = asyncio.get_running_loop()
        before = await loop.run_in_executor(None, take_snapshot, self.project_dir)

        result = await self.invoker.run(prompt, resume_session=resume_session)

        after = await loop.run_in_executor(None, take_snapshot, self.project_dir)
        warnings = analyze_changes(before, after).warnings()
        for warning in warnings:
            logger.warning(f"Milestone {milestone.id}: {warning}", extra={"milestone": milestone.id})
            self._report(f"WARNING: {warning}")

        outcome = AttemptOutcome(
            milestone_id=milestone.id,
            success=False,
            output=self.redactor(result.output),
            warnings=warnings,
            cost=result.cost,
            session_id=result.session_id,
        )

        if not result.success:
            outcome.errors = [self.redactor(result.error or "Agent execution failed")]
            outcome.duration_seconds = time.monotonic() - start
            return outcome

        if self.verify_commands:
            self._report("Running automated checks...")
        checks = await run_verification(self.project_dir, self.verify_commands, self.verify_timeout)
        failed = [c for c in checks if not c.passed]
        if failed:
            outcome.errors = [self.redactor(f"{c.command} failed:\n{c.output}") for c in failed]
            learning = learning_from_failure(outcome.errors)
            if learning:
                outcome.learnings.append(learning)
        else:
            outcome.success = True

        outcome.duration_seconds = time.monotonic() - start
        return outcome

    def _report(self, text: str) -> None:
        if self.reporter is not None:
            self.reporter.output(text)
