"""Shared test fixtures and in-memory fakes."""

from __future__ import annotations

from pathlib import Path

import pytest

from claude_fsd.commands import CommandResult
from claude_fsd.config import OrchestratorConfig
from claude_fsd.models import (
    AgentRunResult,
    CostSnapshot,
    FSDConfig,
    Milestone,
    Plan,
    UserBlocker,
)

PASS_REPORT = """\
# QA Report: feature

## Result: PASS

## How I Tested
- Ran the CLI with sample input

## Issues Found
- No issues found
"""

FAIL_REPORT = """\
# QA Report: feature

## Result: FAIL

## How I Tested
- Clicked the submit button

## Issues Found
- [major] Submit button does nothing
  - Evidence: no request in the network tab
"""


class FakeInvoker:
    """Scripted agent. QA prompts write qa-report.md like the real QA agent does."""

    def __init__(
        self,
        project_dir: Path,
        attempts: list[bool] | None = None,
        qa_reports: list[str] | None = None,
        cost: float = 0.10,
    ):
        self.project_dir = project_dir
        self.attempts = list(attempts or [])
        self.qa_reports = list(qa_reports or [])
        self.cost = cost
        self.prompts: list[str] = []
        self.qa_prompts: list[str] = []
        self.resume_sessions: list[str | None] = []
        self.on_call = None

    async def run(
        self,
        prompt: str,
        resume_session: str | None = None,
        timeout: float | None = None,
    ) -> AgentRunResult:
        cost = CostSnapshot(total_cost_usd=self.cost)
        if prompt.startswith("You are a QA engineer"):
            self.qa_prompts.append(prompt)
            report = self.qa_reports.pop(0) if self.qa_reports else PASS_REPORT
            (self.project_dir / "qa-report.md").write_text(report)
            return AgentRunResult(success=True, output="QA finished", cost=cost)

        self.prompts.append(prompt)
        self.resume_sessions.append(resume_session)
        if self.on_call is not None:
            self.on_call(prompt)
        ok = self.attempts.pop(0) if self.attempts else True
        return AgentRunResult(
            success=ok,
            output="Implemented the milestone" if ok else "",
            error=None if ok else "Agent crashed",
            session_id="sess-1",
            cost=cost,
        )


class FakeGitRunner:
    """In-memory git: tracks the current branch and answers the commands the guard uses."""

    def __init__(
        self,
        git_dir: Path,
        branch: str = "main",
        installed: bool = True,
        is_repo: bool = True,
        dirty: bool = False,
        fail_checkout: bool = False,
    ):
        self.git_dir = git_dir
        self.branch = branch
        self.installed = installed
        self.is_repo = is_repo
        self.dirty = dirty
        self.fail_checkout = fail_checkout
        self.calls: list[list[str]] = []

    def check_installed(self) -> bool:
        return self.installed

    async def run(self, args: list[str], cwd: Path | None = None) -> CommandResult:
        self.calls.append(list(args))
        command = args[0]
        if command == "rev-parse":
            if not self.is_repo:
                return CommandResult(128, stderr="fatal: not a git repository")
            if "--is-inside-work-tree" in args:
                return CommandResult(0, "true\n")
            if "--abbrev-ref" in args:
                return CommandResult(0, f"{self.branch}\n")
            if "--git-dir" in args:
                return CommandResult(0, f"{self.git_dir}\n")
        if command == "status":
            return CommandResult(0, " M app.py\n" if self.dirty else "")
        if command == "checkout":
            if self.fail_checkout:
                return CommandResult(1, stderr="error: pathspec did not match")
            self.branch = args[2] if args[1] == "-b" else args[1]
            return CommandResult(0)
        if command == "rev-list":
            return CommandResult(0, "3\n")
        if command == "diff":
            return CommandResult(0, " app.py | 4 ++--\n 1 file changed\n")
        return CommandResult(0)


class FakeTool:
    def __init__(self, installed: bool = False):
        self.installed = installed

    def check_installed(self) -> bool:
        return self.installed

    async def run(self, args: list[str], cwd: Path | None = None) -> CommandResult:
        return CommandResult(0)


class RecordingReporter:
    """OutputHandler that records every call. confirm() answers from a script (default yes)."""

    def __init__(self, answers: list[bool] | None = None):
        self.events: list[tuple] = []
        self.answers = list(answers or [])
        self.questions: list[str] = []

    def names(self) -> list[str]:
        return [e[0] for e in self.events]

    def outputs(self) -> list[str]:
        return [e[1] for e in self.events if e[0] == "output"]

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        def record(*args):
            self.events.append((name, *args))
        return record

    async def confirm(self, question: str) -> bool:
        self.questions.append(question)
        self.events.append(("confirm", question))
        return self.answers.pop(0) if self.answers else True


class StaticPlanner:
    def __init__(self, plan: Plan):
        self.plan = plan
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def generate_plan(self, goal: str, context: dict[str, str]) -> Plan:
        self.calls.append((goal, context))
        return self.plan


def make_plan(*specs: tuple[str, list[str]], blockers: list[UserBlocker] | None = None) -> Plan:
    """Plan from (id, depends_on) pairs."""
    return Plan(
        milestones=[
            Milestone(
                id=mid,
                title=f"Milestone {mid}",
                description=f"Build part {mid}",
                success_criteria=f"{mid} works",
                qa_goal=f"Verify {mid} as a user",
                depends_on=deps,
            )
            for mid, deps in specs
        ],
        user_blockers=blockers or [],
        estimated_cost_usd=2.5,
        estimated_time_minutes=30,
        risks=["Flaky network"],
    )


@pytest.fixture
def linear_plan() -> Plan:
    return make_plan(("m1", []), ("m2", ["m1"]), ("m3", ["m2"]))


@pytest.fixture
def independent_plan() -> Plan:
    return make_plan(("m1", []), ("m2", []), ("m3", ["m1"]))


@pytest.fixture
def orch_config(tmp_path: Path) -> OrchestratorConfig:
    """Quiet config: no verification commands, no sensitive-approval prompts."""
    return OrchestratorConfig(
        project_dir=tmp_path,
        structured_log=False,
        verify_commands=[],
        fsd=FSDConfig(sensitive_approval=False),
    )


@pytest.fixture
def git_runner(tmp_path: Path) -> FakeGitRunner:
    git_dir = tmp_path / ".git"
    git_dir.mkdir()
    return FakeGitRunner(git_dir)
