"""Tool approval for agent sessions: sensitive commands go to the operator."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from claude_agent_sdk.types import (
    PermissionResultAllow,
    PermissionResultDeny,
    ToolPermissionContext,
)

from .hooks import analyze_safety, is_forbidden_path, is_path_within_project
from .redaction import SecretRedactor

if TYPE_CHECKING:
    from .reporters import OutputHandler

logger = logging.getLogger("fsd")

FILE_TOOLS = {"Read", "Write", "Edit", "NotebookEdit"}


class ToolApprovals:
    """can_use_tool callback.

    Routine tools are approved automatically. With sensitive approval on, Bash
    commands matching a dangerous pattern and file access outside the project
    need an explicit yes from the operator; no answer within the timeout
    is a no. AskUserQuestion is answered with the first offered option, and
    the choice is shown to the operator.
    """

    def __init__(
        self,
        reporter: OutputHandler,
        project_dir: Path,
        sensitive_approval: bool = True,
        input_timeout: float = 120.0,
        redactor: SecretRedactor | None = None,
    ):
        self.reporter = reporter
        self.redactor = redactor or SecretRedactor()
        self.project_dir = project_dir
        self.sensitive_approval = sensitive_approval
        self.input_timeout = input_timeout

    async def can_use_tool(
        self,
        tool_name: str,
        input_data: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResultAllow | PermissionResultDeny:
        if tool_name == "AskUserQuestion":
            return await self._handle_ask_user_question(input_data)

        reason = self.approval_reason(tool_name, input_data)
        if reason is None:
            return PermissionResultAllow(updated_input=input_data)

        if not self.sensitive_approval:
            logger.warning(f"Sensitive operation allowed without approval: {reason}")
            return PermissionResultAllow(updated_input=input_data)

        return await self._ask_approval(tool_name, input_data, reason)

    def approval_reason(self, tool_name: str, input_data: dict[str, Any]) -> str | None:
        """Why this tool call needs the operator, or None if it is routine."""
        if tool_name == "Bash":
            return analyze_safety(input_data.get("command", ""), self.project_dir)

        if tool_name in FILE_TOOLS:
            path = input_data.get("file_path") or input_data.get("notebook_path") or ""
            if not path:
                return None
            if is_forbidden_path(path):
                return f"Access to sensitive path: {path}"
            if not is_path_within_project(path, self.project_dir):
                return f"Path outside project root: {path}"
        return None

    async def _ask_approval(
        self, tool_name: str, input_data: dict[str, Any], reason: str,
    ) -> PermissionResultAllow | PermissionResultDeny:
        detail = input_data.get("command") or input_data.get("file_path") or str(input_data)[:200]
        self.reporter.output(self.redactor(f"SAFETY WARNING: {reason}"))
        self.reporter.output(self.redactor(f"  {tool_name}: {detail}"))

        try:
            allowed = await asyncio.wait_for(
                self.reporter.confirm("Allow this action?"),
                timeout=self.input_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"No approval within {self.input_timeout:.0f}s, denying: {reason}")
            return PermissionResultDeny(
                message=f"No operator response within {self.input_timeout:.0f}s timeout"
            )

        if allowed:
            logger.info(f"Operator approved: {reason}")
            return PermissionResultAllow(updated_input=input_data)
        logger.info(f"Operator denied: {reason}")
        return PermissionResultDeny(message=f"Operator denied this operation ({reason})")

    async def _handle_ask_user_question(
        self, input_data: dict[str, Any],
    ) -> PermissionResultAllow | PermissionResultDeny:
        """FSD runs unattended: questions are answered with the first option."""
        questions = input_data.get("questions", [])
        answers: dict[str, str] = {}
        for q in questions:
            options = q.get("options", [])
            answer = options[0]["label"] if options else "Use your best judgement"
            self.reporter.output(self.redactor(f"Agent asked: {q.get('question', '')} -> {answer}"))
            answers[q.get("question", "")] = answer
        return PermissionResultAllow(
            updated_input={"questions": questions, "answers": answers}
        )
