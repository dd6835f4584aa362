"""QA review: a separate agent session verifies each completed milestone."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import QAFailureError
from .models import CostSnapshot, Milestone, QAIssue, QAReport, QASeverity
from .prompts import build_qa_fix_prompt, build_qa_prompt
from .redaction import SecretRedactor

if TYPE_CHECKING:
    from .runner import Invoker

logger = logging.getLogger("fsd")

REPORT_FILE = "qa-report.md"
QA_TIMEOUT_SECONDS = 600.0

_ISSUE_RE = re.compile(r"^\s*-\s*\[(critical|major|minor)\]\s*(.+)$", re.IGNORECASE)
_EVIDENCE_RE = re.compile(r"Evidence:\s*(.+)", re.IGNORECASE)


def _section(markdown: str, heading: str) -> str | None:
    """Body of the first `## <heading>` section, up to the next `##`."""
    match = re.search(rf"^##\s*{heading}[^\n]*\n(.*?)(?=^##|\Z)", markdown, re.M | re.S)
    return match.group(1) if match else None


def _bullets(body: str | None) -> list[str]:
    if not body:
        return []
    items = [
        re.sub(r"^-\s*", "", line.strip()).strip()
        for line in body.splitlines()
        if line.strip().startswith("-")
    ]
    return [i for i in items if i]


def parse_qa_report(markdown: str) -> QAReport:
    """Parse a qa-report.md into a QAReport.

    The verdict is FAIL if the report says so or lists a critical issue.
    """
    passed = not re.search(r"Result:\s*FAIL", markdown)

    tested = _section(markdown, "How I Tested") or _section(markdown, "What I Tested")

    issues: list[QAIssue] = []
    current: QAIssue | None = None
    for line in (_section(markdown, "Issues Found") or "").splitlines():
        issue_match = _ISSUE_RE.match(line)
        if issue_match:
            description = issue_match.group(2).strip()
            current = None
            if description and "no issues" not in description.lower():
                current = QAIssue(
                    severity=QASeverity(issue_match.group(1).lower()),
                    description=description,
                )
                issues.append(current)
            continue
        evidence_match = _EVIDENCE_RE.search(line)
        if current is not None and current.evidence is None and evidence_match:
            current.evidence = evidence_match.group(1).strip()

    if any(i.severity == QASeverity.CRITICAL for i in issues):
        passed = False

    return QAReport(
        passed=passed,
        issues=issues,
        test_approach=_bullets(tested),
        console_errors=_bullets(_section(markdown, r"Console")),
        recommendations=_bullets(_section(markdown, "Recommendations")),
    )


def _failed_report(description: str) -> QAReport:
    return QAReport(
        passed=False,
        issues=[QAIssue(severity=QASeverity.MAJOR, description=description)],
        recommendations=["Re-run QA or verify manually"],
    )


class QAReviewer:
    """Runs the QA agent and turns its report into a verdict."""

    def __init__(
        self,
        invoker: Invoker,
        project_dir: Path,
        timeout: float = QA_TIMEOUT_SECONDS,
        redactor: SecretRedactor | None = None,
    ):
        self.invoker = invoker
        self.project_dir = project_dir
        self.timeout = timeout
        self.redactor = redactor or SecretRedactor()

    async def spawn_qa_agent(self, milestone: Milestone) -> tuple[QAReport, CostSnapshot]:
        report_path = self.project_dir / REPORT_FILE
        # A report left over from an earlier milestone must not be read as this one's
        report_path.unlink(missing_ok=True)

        logger.info(f"Spawning QA agent for milestone {milestone.id}", extra={"milestone": milestone.id})
        result = await self.invoker.run(build_qa_prompt(milestone), timeout=self.timeout)
        logger.info(
            f"QA agent finished (success={result.success}, cost=${result.cost.total_cost_usd:.4f})"
        )

        if report_path.exists():
            try:
                return parse_qa_report(report_path.read_text()), result.cost
            except OSError as e:
                logger.warning(f"Could not read {report_path}: {e}")

        if "# QA Report" in result.output:
            return parse_qa_report(result.output), result.cost

        if not result.success:
            error = self.redactor(result.error or "unknown error")
            return _failed_report(f"QA execution failed: {error}"), result.cost

        logger.warning("QA agent did not produce a report")
        return _failed_report("QA agent did not produce a report (INCOMPLETE)"), result.cost

    def generate_qa_fix_prompt(
        self,
        milestone: Milestone,
        issues: list[QAIssue],
        learnings: list[str],
        rules: str = "",
    ) -> str:
        return self.redactor(build_qa_fix_prompt(milestone, issues, learnings, rules))

    def save_qa_report(self, report: QAReport, milestone: Milestone) -> Path | None:
        """Write .claude/qa-report-<id>.md. Failures are logged, never raised."""
        path = self.project_dir / ".claude" / f"qa-report-{milestone.id}.md"
        issues = "\n".join(
            f"- [{i.severity.value}] {i.description}"
            + (f"\n  - Evidence: {i.evidence}" if i.evidence else "")
            for i in report.issues
        )
        markdown = "\n".join([
            f"# QA Report: {milestone.title}",
            "",
            f"## Result: {'PASS' if report.passed else 'FAIL'}",
            "",
            "## What Was Tested",
            "\n".join(f"- {t}" for t in report.test_approach) or "- No test scenarios recorded",
            "",
            "## Issues Found",
            issues or "- No issues found",
            "",
            "## Console Errors",
            "\n".join(f"- {e}" for e in report.console_errors) or "- None",
            "",
            "## Recommendations",
            "\n".join(f"- {r}" for r in report.recommendations) or "- None",
            "",
        ])
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.redactor(markdown))
        except OSError as e:
            logger.warning(f"Could not save QA report to {path}: {e}")
            return None
        return path


def require_pass(report: QAReport, milestone: Milestone) -> None:
    """Raise QAFailureError unless the report passed."""
    if not report.passed:
        raise QAFailureError(
            f"QA failed for milestone {milestone.id} with {len(report.issues)} issue(s)"
        )
