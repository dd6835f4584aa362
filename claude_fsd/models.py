"""Data models for FSD mode."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import PlanningError


class MilestoneSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class Milestone(BaseModel):
    """A discrete unit of agent work."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    success_criteria: str = ""
    qa_goal: str = ""
    size: MilestoneSize = MilestoneSize.MEDIUM
    depends_on: list[str] = Field(default_factory=list)


class UserBlocker(BaseModel):
    """Manual prerequisite the user must complete before execution."""

    id: str
    description: str
    check_instruction: str = ""
    required_for: list[str] = Field(default_factory=list)
    completed: bool = False


class Plan(BaseModel):
    """Ordered milestones plus estimates. Immutable once generated for a run."""

    model_config = ConfigDict(frozen=True)

    milestones: list[Milestone]
    user_blockers: list[UserBlocker] = Field(default_factory=list)
    estimated_cost_usd: float = 0.0
    estimated_time_minutes: int = 0
    risks: list[str] = Field(default_factory=list)

    @property
    def milestone_ids(self) -> list[str]:
        return [m.id for m in self.milestones]

    def get(self, milestone_id: str) -> Milestone | None:
        for m in self.milestones:
            if m.id == milestone_id:
                return m
        return None

    @property
    def outstanding_blockers(self) -> list[UserBlocker]:
        return [b for b in self.user_blockers if not b.completed]

    def validate_graph(self) -> None:
        """Raise PlanningError on duplicate ids, unknown dependencies or cycles."""
        if not self.milestones:
            raise PlanningError("Plan contains no milestones")

        ids = self.milestone_ids
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise PlanningError(f"Duplicate milestone ids: {', '.join(duplicates)}")

        known = set(ids)
        for m in self.milestones:
            unknown = [d for d in m.depends_on if d not in known]
            if unknown:
                raise PlanningError(
                    f"Milestone {m.id} depends on unknown milestone(s): {', '.join(unknown)}"
                )

        # Kahn's algorithm: anything left unvisited sits on a cycle
        remaining = {m.id: set(m.depends_on) for m in self.milestones}
        while remaining:
            ready = [mid for mid, deps in remaining.items() if not deps]
            if not ready:
                raise PlanningError(
                    f"Dependency cycle among milestones: {', '.join(sorted(remaining))}"
                )
            for mid in ready:
                del remaining[mid]
            for deps in remaining.values():
                deps.difference_update(ready)


class FSDConfig(BaseModel):
    """Run budgets. Supplied at run start and immutable during the run."""

    model_config = ConfigDict(frozen=True)

    max_cost_usd: float = Field(default=10.0, gt=0)
    max_iterations_per_milestone: int = Field(default=5, ge=1)
    max_total_prompts: int = Field(default=100, ge=1)
    checkpoint_interval: int = Field(default=3, ge=1)
    sensitive_approval: bool = True
    auto_resume: bool = False


class FSDMode(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    QA = "qa"
    PAUSED = "paused"
    COMPLETE = "complete"
    FAILED = "failed"


class InteractiveMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)


class FSDState(BaseModel):
    """Mutable run state, owned by the orchestrator."""

    mode: FSDMode = FSDMode.PLANNING
    current_milestone_id: str | None = None
    completed_milestones: list[str] = Field(default_factory=list)
    skipped_milestones: list[str] = Field(default_factory=list)
    milestone_attempts: dict[str, int] = Field(default_factory=dict)
    failed_attempts: int = Field(default=0, ge=0)
    total_cost_usd: float = Field(default=0.0, ge=0)
    total_prompts: int = Field(default=0, ge=0)
    learnings: list[str] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=datetime.now)
    agent_session_id: str | None = None
    interactive_history: list[InteractiveMessage] = Field(default_factory=list)

    @field_validator("completed_milestones", "skipped_milestones")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    def mark_completed(self, milestone_id: str) -> None:
        if milestone_id not in self.completed_milestones:
            self.completed_milestones.append(milestone_id)

    def mark_skipped(self, milestone_id: str) -> None:
        if milestone_id not in self.skipped_milestones:
            self.skipped_milestones.append(milestone_id)

    def is_finished(self, milestone_id: str) -> bool:
        return (
            milestone_id in self.completed_milestones
            or milestone_id in self.skipped_milestones
        )

    def add_learning(self, learning: str) -> None:
        if learning not in self.learnings:
            self.learnings.append(learning)


class ModelUsage(BaseModel):
    """Per-model usage as reported by the agent runtime."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    input_tokens: int = Field(default=0, alias="inputTokens")
    output_tokens: int = Field(default=0, alias="outputTokens")
    cache_read_input_tokens: int = Field(default=0, alias="cacheReadInputTokens")
    cache_creation_input_tokens: int = Field(default=0, alias="cacheCreationInputTokens")
    web_search_requests: int = Field(default=0, alias="webSearchRequests")
    cost_usd: float = Field(default=0.0, alias="costUSD")
    context_window: int = Field(default=0, alias="contextWindow")


class CostSnapshot(BaseModel):
    """Cost of a single agent invocation."""

    model_config = ConfigDict(frozen=True)

    total_cost_usd: float = Field(default=0.0, ge=0)
    input_tokens: int = 0
    output_tokens: int = 0
    model_usage: dict[str, ModelUsage] = Field(default_factory=dict)


class AgentRunResult(BaseModel):
    """What one agent invocation produced."""

    success: bool
    output: str = ""
    error: str | None = None
    session_id: str | None = None
    cost: CostSnapshot = Field(default_factory=CostSnapshot)
    duration_seconds: float = 0.0
    tool_count: int = 0


class BillingMode(str, Enum):
    BYOK = "byok"
    MANAGED = "managed"


class BillingContext(str, Enum):
    CLI = "cli"
    CLOUD = "cloud"


class BillingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: BillingMode = BillingMode.BYOK
    context: BillingContext = BillingContext.CLI


class ChargeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    charged_credits: int = Field(ge=0)
    markup_rate: float
    actual_cost_usd: float
    final_cost_usd: float


class QASeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class QAIssue(BaseModel):
    severity: QASeverity
    description: str
    evidence: str | None = None


class QAReport(BaseModel):
    """Structured verdict of a QA round."""

    passed: bool
    issues: list[QAIssue] = Field(default_factory=list)
    test_approach: list[str] = Field(default_factory=list)
    console_errors: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class GitState(BaseModel):
    original_branch: str
    fsd_branch: str


class Checkpoint(BaseModel):
    """Persisted FSD session: state plus everything needed to resume it."""

    version: Literal[1] = 1
    saved_at: datetime = Field(default_factory=datetime.now)
    goal: str
    plan: Plan
    state: FSDState
    config: FSDConfig
    git_state: GitState | None = None


class AttemptOutcome(BaseModel):
    """Result of one milestone attempt."""

    milestone_id: str
    success: bool
    output: str = ""
    errors: list[str] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    cost: CostSnapshot = Field(default_factory=CostSnapshot)
    session_id: str | None = None
    duration_seconds: float = 0.0


class MilestoneStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProgressEntry(BaseModel):
    """A single entry in the progress log."""

    timestamp: datetime
    milestone_id: str
    milestone_title: str
    status: MilestoneStatus
    summary: str
    attempts: int = 0
    session_id: str | None = None
    error: str | None = None


class RunSummary(BaseModel):
    milestones_completed: int
    milestones_total: int
    milestones_skipped: int = 0
    total_prompts: int
    total_cost_usd: float
    elapsed_minutes: int
    failed_attempts: int
    charged_credits: int = 0


class RunStatus(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    DRY_RUN = "dry_run"
    STOPPED = "stopped"
    ABORTED = "aborted"


class RunOutcome(BaseModel):
    status: RunStatus
    summary: RunSummary | None = None
    error: str | None = None
    charged_credits: int = 0
    final_cost_usd: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.status in (RunStatus.COMPLETE, RunStatus.DRY_RUN, RunStatus.STOPPED):
            return 0
        return 1
