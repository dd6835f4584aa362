"""Hook callbacks and rule-based safety checks for agent sessions."""

from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path
from typing import Any

from .git_protection import PROTECTED_BRANCHES

logger = logging.getLogger("fsd")

# ---------------------------------------------------------------------------
# Git rules enforced in-process, independent of the pre-push hook.
# Each entry is (pattern, reason). A match denies the tool call outright.
# ---------------------------------------------------------------------------

_PROTECTED = "|".join(sorted(PROTECTED_BRANCHES))

GIT_BLOCKED_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bgit\s+push\b"), "git push (review and push manually after FSD)"),
    (
        re.compile(rf"\bgit\s+(checkout|switch)\s+(-\S+\s+)*({_PROTECTED})(?![\w/.-])"),
        "checkout of a protected branch",
    ),
    (re.compile(rf"\bgit\s+merge\s+.*\binto\s+({_PROTECTED})\b"), "merge into a protected branch"),
    (re.compile(r"\bgit\s+reset\s+--hard\b"), "destructive history reset"),
    (re.compile(r"\bgit\s+branch\s+-D\b"), "force-delete branch"),
]

# ---------------------------------------------------------------------------
# Commands that require explicit operator approval when sensitive_approval is on
# ---------------------------------------------------------------------------

DANGEROUS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Remote code execution
    (re.compile(r"\bcurl\s+[^|]*\|\s*(bash|sh|zsh)\b", re.I), "curl piped to shell"),
    (re.compile(r"\bwget\s+[^|]*\|\s*(bash|sh|zsh)\b", re.I), "wget piped to shell"),
    # Destructive file operations
    (re.compile(r"\brm\s+-rf?\s+[/~]", re.I), "recursive rm of absolute path"),
    (re.compile(r"\brm\s+-rf?\s+\.\.", re.I), "recursive rm outside project"),
    (re.compile(r"\bfind\s+.*-delete\b", re.I), "find -delete"),
    (re.compile(r"\bfind\s+.*-exec\s+rm\b", re.I), "find -exec rm"),
    # Privilege escalation
    (re.compile(r"\bsudo\s+", re.I), "sudo"),
    (re.compile(r"\bchmod\s+777\b", re.I), "chmod 777"),
    (re.compile(r"\bchown\s+-R\b", re.I), "recursive chown"),
    # Sensitive file access
    (re.compile(r"\b(cat|cp)\s+.*/(\.ssh|\.aws|\.env)", re.I), "sensitive file access"),
    # Network exfiltration
    (re.compile(r"\bcurl\s+.*-d\s+.*@", re.I), "curl file upload"),
    (re.compile(r"\bnc\s+-e\b", re.I), "netcat reverse shell"),
    (re.compile(r"\bbash\s+-i\s+>&", re.I), "bash reverse shell"),
    # Database destruction
    (re.compile(r"\b(drop\s+(table|database)|truncate\s+table)\b", re.I), "destructive SQL"),
]

FORBIDDEN_PATHS = [
    "~/.ssh",
    "~/.aws",
    "~/.gnupg",
    "~/.config/gh",
    "/etc/passwd",
    "/etc/shadow",
]

_PATH_PATTERNS = [
    re.compile(r"(?:^|\s)(/[^\s\"']+)"),      # absolute
    re.compile(r"(?:^|\s)(~/[^\s\"']+)"),     # home-relative
    re.compile(r"(?:^|\s)(\.\./[^\s\"']+)"),  # parent-relative
]


def check_git_command(command: str) -> str | None:
    """Reason string if the command breaks the git rules, else None."""
    for regex, reason in GIT_BLOCKED_PATTERNS:
        if regex.search(command):
            return reason
    return None


def dangerous_reason(command: str) -> str | None:
    for regex, reason in DANGEROUS_PATTERNS:
        if regex.search(command):
            return reason
    return None


def _normalize(path: str) -> str:
    return os.path.normpath(os.path.expanduser(path))


def is_forbidden_path(path: str) -> bool:
    normalized = _normalize(path)
    return any(normalized.startswith(_normalize(p)) for p in FORBIDDEN_PATHS)


def is_path_within_project(path: str, project_root: Path) -> bool:
    root = _normalize(str(project_root))
    target = _normalize(path if os.path.isabs(os.path.expanduser(path)) else os.path.join(root, path))
    return target == root or target.startswith(root + os.sep)


def extract_paths(text: str) -> list[str]:
    paths: list[str] = []
    for pattern in _PATH_PATTERNS:
        paths.extend(m.group(1) for m in pattern.finditer(text))
    return list(dict.fromkeys(paths))


def analyze_safety(text: str, project_root: Path) -> str | None:
    """Reason the command or path needs approval, or None if it is routine."""
    reason = dangerous_reason(text)
    if reason:
        return f"Dangerous command pattern detected: {reason}"

    for path in extract_paths(text):
        if is_forbidden_path(path):
            return f"Access to sensitive path: {path}"
        if not is_path_within_project(path, project_root) and not path.startswith("/tmp"):
            return f"Path outside project root: {path}"
    return None


class SessionHooks:
    """Hook callbacks for git protection, activity tracking and logging."""

    def __init__(self, stall_timeout: float = 300.0, git_protected: bool = True):
        self.stall_timeout = stall_timeout
        self.git_protected = git_protected
        self._last_tool_time = time.monotonic()
        self._tool_count = 0
        self.blocked: list[str] = []

    async def keepalive_hook(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Required PreToolUse hook to keep the stream open for can_use_tool.

        The Python SDK requires at least one PreToolUse hook returning
        {"continue_": True} for the can_use_tool callback to function.
        """
        return {"continue_": True}

    async def git_guard_hook(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Deny git operations that would escape the FSD branch."""
        if not self.git_protected:
            return {}
        if input_data.get("hook_event_name") != "PreToolUse":
            return {}
        if input_data.get("tool_name") != "Bash":
            return {}

        command = input_data.get("tool_input", {}).get("command", "")
        reason = check_git_command(command)
        if reason:
            logger.warning(f"BLOCKED: {reason}: {command}")
            self.blocked.append(command)
            return {
                "hookSpecificOutput": {
                    "hookEventName": "PreToolUse",
                    "permissionDecision": "deny",
                    "permissionDecisionReason": f"Blocked by FSD git protection: {reason}",
                }
            }
        return {}

    async def activity_tracker(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Track tool activity timestamps for stall detection."""
        self._last_tool_time = time.monotonic()
        self._tool_count += 1
        logger.debug(f"  Hook: tool #{self._tool_count}: {input_data.get('tool_name', 'unknown')}")
        return {}

    async def post_tool_logger(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Log tool results, highlighting errors."""
        tool_name = input_data.get("tool_name", "unknown")
        response = input_data.get("tool_response", "")
        if isinstance(response, dict) and response.get("is_error"):
            logger.warning(f"Tool {tool_name} error: {str(response)[:500]}")
        return {}

    async def stop_hook(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        logger.debug(f"Session stopping. Tools used: {self._tool_count}")
        return {}

    @property
    def tool_count(self) -> int:
        return self._tool_count

    @property
    def seconds_since_last_activity(self) -> float:
        return time.monotonic() - self._last_tool_time

    @property
    def is_stalled(self) -> bool:
        return self.seconds_since_last_activity > self.stall_timeout
