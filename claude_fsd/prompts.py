"""Prompt templates for milestone, retry, QA and fix sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from .models import Milestone, QAIssue

MILESTONE_PROMPT_TEMPLATE = """\
## Milestone: {title}

{description}

## Success Criteria
{success_criteria}

## Execution Principles (MANDATORY)

### Think Before Coding
- If something is unclear, state your assumptions before starting
- If multiple approaches exist, briefly explain which you chose and why

### Simplicity First
- Implement ONLY what the milestone asks for
- No extra features, no "nice to have" additions
- Avoid over-abstraction

### Surgical Changes
- Touch ONLY what you must to complete this milestone
- Do NOT refactor adjacent code
- Do NOT add comments to code you didn't write

### Goal-Driven
- Keep working until the success criteria is met
- Run checks frequently to verify progress
- If stuck after 3 attempts, STOP and explain what's blocking

## Your Job
Implement this milestone. You decide HOW to implement it.
Commit your work when the success criteria is met.
{rules}{learnings}"""

RETRY_SECTION = """
## IMPORTANT
This is a retry attempt. The previous attempt failed with:

{errors}

Review the errors carefully and make targeted fixes.
"""

QA_PROMPT_TEMPLATE = """\
You are a QA engineer verifying a completed milestone.

## What was built
{title}

{description}

## Verification goal
{qa_goal}

## Your job
Figure out how to verify this goal is achieved. Think like a REAL USER.
You may run commands, read files, use the network, and install any tools you need.

## Testing approach
1. Understand what was built
2. Figure out HOW to verify it works
3. Try normal use cases
4. Try edge cases and weird inputs
5. Try to break it

Don't just check that code exists -- actually RUN and TEST it.

## Output
Create qa-report.md with this structure:

```markdown
# QA Report: {title}

## Result: PASS | FAIL

## How I Tested
- [tools/commands you used]

## What I Tested
- [each test scenario]

## Issues Found
- [critical|major|minor] Description
  - Evidence: What you observed

## Console/Error Output
- [errors or warnings observed]

## Recommendations
- [suggestions]
```
"""

QA_FIX_PROMPT_TEMPLATE = """\
## Fix QA Issues: {title}

The QA Agent found the following issues that need to be fixed:
{issues_text}

## Fix Principles (Surgical Changes)
- Fix ONLY the reported issues - nothing else
- Do NOT refactor or improve adjacent code
- Make the MINIMAL change needed to fix each issue
- Verify the fix works before moving on

## Success Criteria
{success_criteria}
{rules}{learnings}"""

GIT_RULES_TEMPLATE = """
## GIT RULES (MANDATORY)

You are working on FSD branch: {fsd_branch}

BLOCKED OPERATIONS:
- git push (any form) - the user reviews and pushes manually
- git checkout of protected branches ({protected})
- git merge into protected branches
- git reset --hard, force push of any kind

ALLOWED OPERATIONS:
- git add, git commit, git status/log/diff, git stash

If you need to push, tell the user: "Changes are ready. Please review and push manually."
"""

SAFETY_RULES_TEMPLATE = """
## SAFETY RULES (MANDATORY)

Project root: {project_dir}

- Only access files within the project root
- Access to ~/.ssh, ~/.aws, ~/.gnupg and /etc is FORBIDDEN
- Do not pipe downloaded scripts into a shell, do not use sudo
- Do not send project files to external URLs
- If you need a restricted operation, explain WHY and ask first
"""


def _learnings_section(learnings: list[str]) -> str:
    if not learnings:
        return ""
    lines = "\n".join(f"- {item}" for item in learnings)
    return f"\n## Learned Rules (from previous attempts)\n{lines}\n"


def build_rules(git_rules: str, project_dir: Path) -> str:
    """Git and safety rules injected into every session prompt."""
    return git_rules + SAFETY_RULES_TEMPLATE.format(project_dir=project_dir)


def build_milestone_prompt(
    milestone: Milestone,
    learnings: list[str],
    rules: str = "",
    errors: list[str] | None = None,
) -> str:
    """Build the prompt for a milestone attempt; `errors` marks it as a retry."""
    prompt = MILESTONE_PROMPT_TEMPLATE.format(
        title=milestone.title,
        description=milestone.description,
        success_criteria=milestone.success_criteria or "(not specified)",
        rules=rules,
        learnings=_learnings_section(learnings),
    )
    if errors is not None:
        error_text = "\n".join(f"- {e}" for e in errors) or "- (no error output)"
        prompt += RETRY_SECTION.format(errors=error_text)
    return prompt


def build_qa_prompt(milestone: Milestone) -> str:
    return QA_PROMPT_TEMPLATE.format(
        title=milestone.title,
        description=milestone.description,
        qa_goal=milestone.qa_goal or milestone.success_criteria or milestone.title,
    )


def build_qa_fix_prompt(
    milestone: Milestone,
    issues: list[QAIssue],
    learnings: list[str],
    rules: str = "",
) -> str:
    parts = []
    for i, issue in enumerate(issues, start=1):
        block = f"\n### Issue {i} [{issue.severity.value}]\n{issue.description}\n"
        if issue.evidence:
            block += f"Evidence: {issue.evidence}\n"
        parts.append(block)

    return QA_FIX_PROMPT_TEMPLATE.format(
        title=milestone.title,
        issues_text="".join(parts) or "\n(no issue details reported)\n",
        success_criteria=milestone.success_criteria or "(not specified)",
        rules=rules,
        learnings=_learnings_section(learnings),
    )
