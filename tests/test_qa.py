"""Tests for QA report parsing and the QA agent wrapper."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FAIL_REPORT, PASS_REPORT, FakeInvoker

from claude_fsd.errors import QAFailureError
from claude_fsd.models import AgentRunResult, CostSnapshot, Milestone, QAIssue, QAReport, QASeverity
from claude_fsd.qa import QAReviewer, parse_qa_report, require_pass

MILESTONE = Milestone(
    id="m1",
    title="Login form",
    description="Email/password login",
    success_criteria="User can log in",
    qa_goal="Log in as a user",
)


class OutputOnlyInvoker:
    """Agent that never writes qa-report.md."""

    def __init__(self, output: str = "", success: bool = True, error: str | None = None):
        self.result = AgentRunResult(
            success=success,
            output=output,
            error=error,
            cost=CostSnapshot(total_cost_usd=0.05),
        )
        self.prompts: list[str] = []

    async def run(self, prompt, resume_session=None, timeout=None) -> AgentRunResult:
        self.prompts.append(prompt)
        return self.result


class TestParseQAReport:
    def test_pass(self):
        report = parse_qa_report(PASS_REPORT)
        assert report.passed is True
        assert report.issues == []
        assert report.test_approach == ["Ran the CLI with sample input"]

    def test_fail_with_evidence(self):
        report = parse_qa_report(FAIL_REPORT)
        assert report.passed is False
        assert len(report.issues) == 1
        issue = report.issues[0]
        assert issue.severity == QASeverity.MAJOR
        assert issue.description == "Submit button does nothing"
        assert issue.evidence == "no request in the network tab"

    def test_critical_issue_fails_even_if_marked_pass(self):
        markdown = """\
# QA Report: x

## Result: PASS

## Issues Found
- [critical] Data loss on save
- [minor] Button misaligned
"""
        report = parse_qa_report(markdown)
        assert report.passed is False
        assert [i.severity for i in report.issues] == [QASeverity.CRITICAL, QASeverity.MINOR]

    def test_minor_issues_still_pass(self):
        markdown = "## Result: PASS\n\n## Issues Found\n- [minor] Typo in footer\n"
        report = parse_qa_report(markdown)
        assert report.passed is True
        assert len(report.issues) == 1

    def test_console_errors_and_recommendations(self):
        markdown = """\
## Result: PASS

## What I Tested
- Opened the page

## Console Errors
- TypeError: x is undefined

## Recommendations
- Add a loading state
"""
        report = parse_qa_report(markdown)
        assert report.test_approach == ["Opened the page"]
        assert report.console_errors == ["TypeError: x is undefined"]
        assert report.recommendations == ["Add a loading state"]


class TestSpawnQAAgent:
    @pytest.mark.asyncio
    async def test_reads_report_file(self, tmp_path: Path):
        invoker = FakeInvoker(tmp_path, qa_reports=[FAIL_REPORT])
        report, cost = await QAReviewer(invoker, tmp_path).spawn_qa_agent(MILESTONE)

        assert report.passed is False
        assert cost.total_cost_usd == 0.10
        assert "Log in as a user" in invoker.qa_prompts[0]

    @pytest.mark.asyncio
    async def test_stale_report_is_ignored(self, tmp_path: Path):
        (tmp_path / "qa-report.md").write_text(FAIL_REPORT)
        invoker = OutputOnlyInvoker(output=PASS_REPORT)

        report, _ = await QAReviewer(invoker, tmp_path).spawn_qa_agent(MILESTONE)

        assert report.passed is True
        assert not (tmp_path / "qa-report.md").exists()

    @pytest.mark.asyncio
    async def test_missing_report_is_incomplete(self, tmp_path: Path):
        invoker = OutputOnlyInvoker(output="I looked around.")
        report, cost = await QAReviewer(invoker, tmp_path).spawn_qa_agent(MILESTONE)

        assert report.passed is False
        assert "INCOMPLETE" in report.issues[0].description
        assert cost.total_cost_usd == 0.05

    @pytest.mark.asyncio
    async def test_agent_failure_is_redacted(self, tmp_path: Path):
        key = "sk-ant-api03-" + "x" * 40
        invoker = OutputOnlyInvoker(success=False, error=f"auth failed for {key}")

        report, _ = await QAReviewer(invoker, tmp_path).spawn_qa_agent(MILESTONE)

        assert report.passed is False
        assert "QA execution failed" in report.issues[0].description
        assert key not in report.issues[0].description


class TestSaveQAReport:
    def test_writes_markdown(self, tmp_path: Path):
        reviewer = QAReviewer(OutputOnlyInvoker(), tmp_path)
        report = QAReport(
            passed=False,
            issues=[QAIssue(severity=QASeverity.MAJOR, description="Crash", evidence="stack")],
            test_approach=["Clicked login"],
        )

        path = reviewer.save_qa_report(report, MILESTONE)

        assert path == tmp_path / ".claude" / "qa-report-m1.md"
        content = path.read_text()
        assert "# QA Report: Login form" in content
        assert "## Result: FAIL" in content
        assert "- [major] Crash" in content
        assert "Evidence: stack" in content

    def test_saved_report_parses_back(self, tmp_path: Path):
        reviewer = QAReviewer(OutputOnlyInvoker(), tmp_path)
        original = parse_qa_report(FAIL_REPORT)

        path = reviewer.save_qa_report(original, MILESTONE)

        reparsed = parse_qa_report(path.read_text())
        assert reparsed.passed is False
        assert reparsed.issues == original.issues


class TestFixPrompt:
    def test_includes_issues_and_is_redacted(self, tmp_path: Path):
        reviewer = QAReviewer(OutputOnlyInvoker(), tmp_path)
        secret = "ghp_" + "B" * 36
        issues = [QAIssue(severity=QASeverity.MAJOR, description=f"Token {secret} leaked in UI")]

        prompt = reviewer.generate_qa_fix_prompt(MILESTONE, issues, ["Run install first"])

        assert "leaked in UI" in prompt
        assert secret not in prompt
        assert "Run install first" in prompt


class TestRequirePass:
    def test_passes(self):
        require_pass(QAReport(passed=True), MILESTONE)

    def test_raises(self):
        report = QAReport(passed=False, issues=[
            QAIssue(severity=QASeverity.MAJOR, description="broken"),
        ])
        with pytest.raises(QAFailureError, match="m1"):
            require_pass(report, MILESTONE)
