"""Agent invocation: run one prompt through ClaudeSDKClient."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    HookMatcher,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)

from .hooks import SessionHooks
from .models import AgentRunResult, CostSnapshot, ModelUsage
from .redaction import SecretRedactor

if TYPE_CHECKING:
    from .approvals import ToolApprovals
    from .config import OrchestratorConfig

logger = logging.getLogger("fsd")


class Invoker(Protocol):
    """Runs one prompt through the coding agent."""

    async def run(
        self,
        prompt: str,
        resume_session: str | None = None,
        timeout: float | None = None,
    ) -> AgentRunResult: ...


def _get_sdk_subprocess_pid(client: ClaudeSDKClient) -> int | None:
    """Extract the PID of the Claude Code subprocess from the SDK client.

    Navigates: client._transport._process.pid
    Returns None if any attribute is missing (SDK internals changed).
    """
    transport = getattr(client, "_transport", None)
    proc = getattr(transport, "_process", None) if transport is not None else None
    return getattr(proc, "pid", None) if proc is not None else None


def cost_from_result(message: ResultMessage) -> CostSnapshot:
    """Build a CostSnapshot from the final ResultMessage."""
    usage: dict[str, Any] = message.usage or {}
    raw_models = getattr(message, "model_usage", None) or {}
    model_usage = {
        model: ModelUsage.model_validate(data)
        for model, data in raw_models.items()
        if isinstance(data, dict)
    }
    return CostSnapshot(
        total_cost_usd=message.total_cost_usd or 0.0,
        input_tokens=usage.get("input_tokens", 0) or 0,
        output_tokens=usage.get("output_tokens", 0) or 0,
        model_usage=model_usage,
    )


# Input field shown next to each tool name in the activity log
_TOOL_DETAIL_FIELDS = {
    "Read": ("file_path", "{}"),
    "Edit": ("file_path", "{}"),
    "Write": ("file_path", "{}"),
    "Bash": ("command", "$ {}"),
    "Glob": ("pattern", "{}"),
    "Grep": ("pattern", "/{}/"),
    "WebFetch": ("url", "{}"),
    "Task": ("subagent_type", "[{}]"),
}


def describe_tool_use(name: str, tool_input: dict[str, Any]) -> str:
    """Short suffix for a tool call log line, e.g. " $ npm test"."""
    field_spec = _TOOL_DETAIL_FIELDS.get(name)
    if field_spec is None:
        return ""
    field, template = field_spec
    value = str(tool_input.get(field, ""))
    if len(value) > 80:
        value = value[:77] + "..."
    return " " + template.format(value)


class AgentInvoker:
    """Executes prompts using the Claude Agent SDK."""

    # Class-level tracking of the active client for signal-based cleanup
    _active_client_pid: int | None = None

    def __init__(
        self,
        config: OrchestratorConfig,
        approvals: ToolApprovals | None = None,
        git_protected: bool = True,
        on_text: Callable[[str], None] | None = None,
        redactor: SecretRedactor | None = None,
    ):
        self.config = config
        self.approvals = approvals
        self.git_protected = git_protected
        self.on_text = on_text
        self.redactor = redactor or SecretRedactor()

    def _options(self, hooks: SessionHooks, resume_session: str | None) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            model=self.config.model,
            permission_mode=self.config.permission_mode,
            allowed_tools=self.config.allowed_tools,
            disallowed_tools=self.config.disallowed_tools,
            cwd=str(self.config.project_dir),
            max_turns=self.config.max_turns_per_milestone,
            can_use_tool=self.approvals.can_use_tool if self.approvals else None,
            setting_sources=["project"],
            mcp_servers=self.config.mcp_servers,
            resume=resume_session,
            hooks={
                "PreToolUse": [
                    # Keepalive must come first (Python SDK requirement)
                    HookMatcher(matcher=None, hooks=[hooks.keepalive_hook]),
                    HookMatcher(matcher="Bash", hooks=[hooks.git_guard_hook]),
                    HookMatcher(matcher=None, hooks=[hooks.activity_tracker]),
                ],
                "PostToolUse": [
                    HookMatcher(matcher=None, hooks=[hooks.post_tool_logger]),
                ],
                "Stop": [
                    HookMatcher(hooks=[hooks.stop_hook]),
                ],
            },
        )

    async def run(
        self,
        prompt: str,
        resume_session: str | None = None,
        timeout: float | None = None,
    ) -> AgentRunResult:
        """Run a prompt with stall detection and redacted progress streaming."""
        start_time = time.monotonic()
        hooks = SessionHooks(
            stall_timeout=self.config.stall_timeout_seconds,
            git_protected=self.git_protected,
        )
        state: dict[str, Any] = {
            "session_id": None,
            "texts": [],
            "result": None,
            "tools": 0,
        }

        is_error = False
        error_msg: str | None = None
        try:
            async with ClaudeSDKClient(self._options(hooks, resume_session)) as client:
                await client.query(prompt)

                # The subprocess exists only after query()
                AgentInvoker._active_client_pid = _get_sdk_subprocess_pid(client)

                stall_task = asyncio.create_task(self._stall_detector(hooks, client))
                try:
                    await asyncio.wait_for(self._consume(client, state), timeout=timeout)
                except asyncio.TimeoutError:
                    is_error = True
                    error_msg = f"Agent timed out after {timeout:.0f}s"
                    logger.warning(error_msg)
                    await client.interrupt()
                finally:
                    stall_task.cancel()
                    try:
                        await stall_task
                    except asyncio.CancelledError:
                        pass
                    AgentInvoker._active_client_pid = None

        except Exception as e:
            AgentInvoker._active_client_pid = None
            is_error = True
            error_msg = f"{type(e).__name__}: {e}"
            logger.error(f"Agent session crashed: {self.redactor(error_msg)}")

        result: ResultMessage | None = state["result"]
        cost = CostSnapshot()
        if result is not None:
            cost = cost_from_result(result)
            if result.is_error and not is_error:
                is_error = True
                error_msg = result.result or f"Agent ended with {result.subtype}"
        elif not is_error:
            is_error = True
            error_msg = "Agent session ended without a result"

        output = (result.result if result is not None and result.result else "\n".join(state["texts"]))
        return AgentRunResult(
            success=not is_error,
            output=output,
            error=error_msg,
            session_id=state["session_id"] or (result.session_id if result is not None else None),
            cost=cost,
            duration_seconds=time.monotonic() - start_time,
            tool_count=state["tools"],
        )

    async def _consume(self, client: ClaudeSDKClient, state: dict[str, Any]) -> None:
        async for message in client.receive_messages():
            if isinstance(message, SystemMessage) and message.subtype == "init":
                state["session_id"] = message.data.get("session_id")
                logger.info(f"  Session started (id: {state['session_id']})")

            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        state["texts"].append(block.text)
                        self._emit_text(block.text)
                    elif isinstance(block, ToolUseBlock):
                        state["tools"] += 1
                        self._log_tool_use(block, state["tools"])

            if isinstance(message, ResultMessage):
                state["result"] = message
                return

    def _emit_text(self, text: str) -> None:
        """Stream the first meaningful line of assistant text, redacted."""
        for line in text.split("\n"):
            line = line.strip()
            if line:
                if len(line) > 120:
                    line = line[:117] + "..."
                line = self.redactor(line)
                if self.on_text:
                    self.on_text(line)
                else:
                    logger.info(f"  Claude: {line}")
                break
        logger.debug(f"  [full text] {self.redactor(text[:500])}")

    def _log_tool_use(self, block: ToolUseBlock, count: int) -> None:
        detail = self.redactor(describe_tool_use(block.name, block.input))
        logger.info(f"  [{count:3d}] {block.name}{detail}")

    @classmethod
    def kill_active_subprocess(cls) -> None:
        """Kill the active Claude Code subprocess and its process group, if any."""
        pid = cls._active_client_pid
        cls._active_client_pid = None
        if pid is None:
            return

        logger.info(f"  Terminating Claude Code subprocess (PID {pid})...")
        try:
            os.killpg(os.getpgid(pid), signal.SIGTERM)
        except OSError:
            # Not a group leader or already gone
            try:
                os.kill(pid, signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                pass

    async def _stall_detector(self, hooks: SessionHooks, client: ClaudeSDKClient) -> None:
        """Background task that interrupts the client if stalled."""
        while True:
            await asyncio.sleep(30)
            if hooks.is_stalled:
                logger.warning(
                    f"Stall detected ({hooks.seconds_since_last_activity:.0f}s "
                    "since last tool). Interrupting."
                )
                await client.interrupt()
                return
