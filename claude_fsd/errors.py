"""Custom exception hierarchy for FSD mode."""


class FSDError(Exception):
    """Base exception for FSD mode."""


class BudgetExceededError(FSDError):
    """Cost or prompt budget exhausted. Fatal: the next attempt never starts."""

    def __init__(self, message: str, total_cost_usd: float, total_prompts: int):
        self.total_cost_usd = total_cost_usd
        self.total_prompts = total_prompts
        super().__init__(message)


class MilestoneExecutionError(FSDError):
    """Error during a milestone attempt."""

    def __init__(self, milestone_id: str, message: str):
        self.milestone_id = milestone_id
        super().__init__(f"Milestone {milestone_id}: {message}")


class MilestoneExhaustedError(MilestoneExecutionError):
    """Milestone used up its iteration budget and other milestones depend on it."""

    def __init__(self, milestone_id: str, iterations: int, dependents: list[str]):
        self.dependents = dependents
        super().__init__(
            milestone_id,
            f"failed after {iterations} iterations; required by {', '.join(dependents)}",
        )


class QAFailureError(FSDError):
    """QA review reported issues for a milestone."""


class PlanningError(FSDError):
    """Failed to obtain a usable plan."""


class GitProtectionError(FSDError):
    """Could not establish or restore the isolated FSD branch."""


class PersistenceError(FSDError):
    """Checkpoint could not be written or read."""


class StateCorruptionError(PersistenceError):
    """Checkpoint file exists but is unreadable or inconsistent with the plan."""


class RunInterrupted(FSDError):
    """Shutdown was requested by a signal."""
