"""Plan generation: decompose a goal into milestones with structured output."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

from claude_agent_sdk import ClaudeAgentOptions, ResultMessage, query
from pydantic import ValidationError

from .errors import PlanningError
from .models import CostSnapshot, Plan
from .runner import cost_from_result

PLAN_PROMPT_TEMPLATE = """\
You are a technical project planner. Break the goal below into an ordered list of \
milestones that a coding agent can implement autonomously, one at a time.

Each milestone should:
1. Be a self-contained unit of work that can be implemented and verified in one session
2. Have a short id ("m1", "m2", ...) and a descriptive title (under 80 chars)
3. State concrete success criteria and a QA goal a tester can verify as a real user
4. List the ids of the milestones it depends on (only earlier milestones)
5. Be sized small, medium or large

Also list any manual steps the user must do first (API keys, accounts, services) as \
user blockers, estimate total cost in USD and time in minutes, and list the main risks.

Goal:

---
{goal}
---
{context}"""

PLAN_SCHEMA = {
    "type": "object",
    "properties": {
        "milestones": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "success_criteria": {"type": "string"},
                    "qa_goal": {"type": "string"},
                    "size": {"type": "string", "enum": ["small", "medium", "large"]},
                    "depends_on": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["id", "title", "description", "success_criteria", "size", "depends_on"],
            },
        },
        "user_blockers": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "description": {"type": "string"},
                    "check_instruction": {"type": "string"},
                    "required_for": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["id", "description"],
            },
        },
        "estimated_cost_usd": {"type": "number"},
        "estimated_time_minutes": {"type": "integer"},
        "risks": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["milestones", "estimated_cost_usd", "estimated_time_minutes", "risks"],
}

CONTEXT_FILES = ("CLAUDE.md", "SCRATCHPAD.md")


class Planner(Protocol):
    async def generate_plan(self, goal: str, context: dict[str, str]) -> Plan: ...


def read_project_context(project_dir: Path) -> dict[str, str]:
    """Contents of CLAUDE.md / SCRATCHPAD.md, when present."""
    context = {}
    for name in CONTEXT_FILES:
        path = project_dir / name
        if path.is_file():
            context[name] = path.read_text()
    return context


def _format_context(context: dict[str, str]) -> str:
    if not context:
        return ""
    parts = [f"\n## {name}\n\n{content}\n" for name, content in context.items()]
    return "\nProject context:\n" + "".join(parts)


def _validated(plan: Plan) -> Plan:
    plan.validate_graph()
    return plan


class AgentPlanner:
    """Asks Claude for a plan using JSON-schema structured output."""

    def __init__(self, project_dir: Path, model: str = "opus"):
        self.project_dir = project_dir
        self.model = model
        self.last_cost: CostSnapshot | None = None

    async def generate_plan(self, goal: str, context: dict[str, str]) -> Plan:
        plan: Plan | None = None
        self.last_cost = None

        async for message in query(
            prompt=PLAN_PROMPT_TEMPLATE.format(goal=goal, context=_format_context(context)),
            options=ClaudeAgentOptions(
                model=self.model,
                output_format={"type": "json_schema", "schema": PLAN_SCHEMA},
                allowed_tools=["Read", "Glob", "Grep"],
                cwd=str(self.project_dir),
            ),
        ):
            if not isinstance(message, ResultMessage):
                continue
            self.last_cost = cost_from_result(message)
            if message.structured_output:
                try:
                    plan = Plan.model_validate(message.structured_output)
                except ValidationError as e:
                    raise PlanningError(f"Planner returned an invalid plan: {e}") from e

        if plan is None:
            raise PlanningError("Planning failed to produce structured output")
        return _validated(plan)


class FilePlanner:
    """Loads a previously written plan from a JSON file."""

    def __init__(self, path: Path):
        self.path = path

    async def generate_plan(self, goal: str, context: dict[str, str]) -> Plan:
        try:
            with open(self.path) as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PlanningError(f"Could not read plan file {self.path}: {e}") from e
        try:
            plan = Plan.model_validate(raw)
        except ValidationError as e:
            raise PlanningError(f"Invalid plan file {self.path}: {e}") from e
        return _validated(plan)
