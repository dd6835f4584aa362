"""FSD state machine: plan, then drive milestones through execution and QA."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from .approvals import ToolApprovals
from .billing import BillingLedger
from .commands import CommandRunner, SubprocessRunner
from .errors import (
    BudgetExceededError,
    FSDError,
    MilestoneExecutionError,
    MilestoneExhaustedError,
    PersistenceError,
    PlanningError,
    QAFailureError,
    RunInterrupted,
)
from .executor import MilestoneExecutor
from .git_protection import GitProtectionGuard
from .logging_config import setup_logger
from .models import (
    Checkpoint,
    CostSnapshot,
    FSDConfig,
    FSDMode,
    FSDState,
    GitState,
    InteractiveMessage,
    Milestone,
    MilestoneStatus,
    Plan,
    ProgressEntry,
    RunOutcome,
    RunStatus,
    RunSummary,
)
from .pause import PauseController
from .planner import AgentPlanner, FilePlanner, read_project_context
from .prompts import build_rules
from .qa import QAReviewer, require_pass
from .redaction import SecretRedactor
from .runner import AgentInvoker
from .state import StatePersistence

if TYPE_CHECKING:
    from .config import OrchestratorConfig
    from .planner import Planner
    from .reporters import OutputHandler
    from .runner import Invoker

logger = logging.getLogger("fsd")

COST_WARNING_RATIO = 0.8


class ExhaustionAction(str, Enum):
    SKIP = "skip"
    ABORT = "abort"


def unfinished_dependents(milestone_id: str, plan: Plan, state: FSDState) -> list[str]:
    return [
        m.id for m in plan.milestones
        if milestone_id in m.depends_on and not state.is_finished(m.id)
    ]


def exhaustion_policy(milestone: Milestone, plan: Plan, state: FSDState) -> ExhaustionAction:
    """Skip a milestone that ran out of iterations unless something still needs it."""
    if unfinished_dependents(milestone.id, plan, state):
        return ExhaustionAction.ABORT
    return ExhaustionAction.SKIP


def next_milestone(plan: Plan, state: FSDState) -> Milestone | None:
    """First unfinished milestone, in plan order, whose dependencies are all completed."""
    for m in plan.milestones:
        if state.is_finished(m.id):
            continue
        if all(dep in state.completed_milestones for dep in m.depends_on):
            return m
    return None


class FSDOrchestrator:
    """Runs one FSD session from goal (or checkpoint) to a terminal outcome."""

    def __init__(
        self,
        config: OrchestratorConfig,
        reporter: OutputHandler,
        planner: Planner | None = None,
        invoker: Invoker | None = None,
        git_runner: CommandRunner | None = None,
        security_runner: CommandRunner | None = None,
        pause: PauseController | None = None,
    ):
        self.config = config
        self.reporter = reporter
        self.logger = setup_logger(config)
        self.redactor = SecretRedactor().with_patterns(config.extra_secret_patterns)
        self.persistence = StatePersistence(config.project_dir, self.redactor)
        self.guard = GitProtectionGuard(
            config.project_dir, git_runner, allow_unprotected=config.allow_unprotected,
        )
        self.security_runner = security_runner or SubprocessRunner(config.security_hook_command)
        self.pause = pause or PauseController()
        self.ledger = BillingLedger(config.billing)

        if planner is None:
            planner = (
                FilePlanner(config.plan_file)
                if config.plan_file is not None
                else AgentPlanner(config.project_dir, model=config.planning_model)
            )
        self.planner = planner
        self._invoker = invoker

        self.goal: str | None = None
        self.plan: Plan | None = None
        self.state: FSDState | None = None
        self.fsd_config: FSDConfig = config.fsd
        self.git_state: GitState | None = None
        self.rules = ""
        self.executor: MilestoneExecutor | None = None
        self.qa: QAReviewer | None = None

        self._shutdown_requested = False
        self._cost_warned = False

    # --- Public API ---

    async def run(self, goal: str | None = None) -> RunOutcome:
        """Run to a terminal outcome. Fatal errors become a failed outcome."""
        self.pause.reset()
        self._shutdown_requested = False
        self._install_signal_handlers()
        try:
            return await self._run(goal)
        finally:
            self._remove_signal_handlers()
            AgentInvoker.kill_active_subprocess()
            await self.guard.release()

    async def interject(self, text: str) -> str:
        """Send an operator message into the agent session while paused."""
        if not self.pause.is_paused or self.state is None:
            raise FSDError("Interjection is only possible while the run is paused")
        if self._invoker is None:
            raise FSDError("No agent session is active")

        state = self.state
        state.interactive_history.append(InteractiveMessage(role="user", content=self.redactor(text)))
        self._check_budget()

        result = await self._invoker.run(self.redactor(text), resume_session=state.agent_session_id)
        self._bill(result.cost)
        state.total_prompts += 1
        if result.session_id:
            state.agent_session_id = result.session_id

        reply = self.redactor(result.output or result.error or "")
        state.interactive_history.append(InteractiveMessage(role="assistant", content=reply))
        self._persist()
        return reply

    # --- Run phases ---

    async def _run(self, goal: str | None) -> RunOutcome:
        if self.config.clear:
            removed = self.persistence.clear()
            self.reporter.output("Cleared saved FSD state" if removed else "No saved FSD state to clear")
            if not goal:
                return RunOutcome(status=RunStatus.STOPPED)

        checkpoint = self._load_checkpoint()
        if checkpoint is None and self.config.resume and not goal:
            self.reporter.error("No resumable FSD session found; provide a goal to start one")
            return RunOutcome(status=RunStatus.FAILED, error="Nothing to resume")
        if checkpoint is None and not goal:
            self.reporter.error("A goal is required to start FSD mode")
            return RunOutcome(status=RunStatus.FAILED, error="No goal given")

        try:
            if checkpoint is not None:
                self._restore(checkpoint)
            else:
                self.goal = goal
                self.state = FSDState()
                self.reporter.start(goal)
                await self._plan()
                if self.config.dry_run:
                    return RunOutcome(status=RunStatus.DRY_RUN)
                if not await self._confirm_start():
                    return RunOutcome(status=RunStatus.STOPPED)

            self.reporter.security_status(self.security_runner.check_installed())
            await self._protect_git(resumed=checkpoint is not None)
            self._build_components()
            return await self._execute()

        except RunInterrupted as e:
            logger.info(str(e))
            self._mark_and_persist(FSDMode.PAUSED)
            self.reporter.error("Interrupted; progress saved. Resume with --resume")
            return self._outcome(RunStatus.ABORTED, error=str(e))
        except FSDError as e:
            message = self.redactor(str(e))
            logger.error(message)
            self._mark_and_persist(FSDMode.FAILED)
            self.reporter.error(message)
            return self._outcome(RunStatus.FAILED, error=message)

    def _load_checkpoint(self) -> Checkpoint | None:
        if not self.persistence.exists():
            return None
        if not self.config.resume:
            if not (self.fsd_config.auto_resume and self.persistence.has_resumable()):
                info = self.persistence.resume_info()
                if info:
                    self.reporter.output(f"Found saved FSD session {info} (use --resume to continue)")
                return None
        checkpoint = self.persistence.load()
        if checkpoint is None:
            self.reporter.output("Saved FSD state is invalid; starting fresh")
            return None
        try:
            checkpoint.plan.validate_graph()
        except PlanningError as e:
            logger.warning(f"Ignoring checkpoint with invalid plan: {e}")
            self.reporter.output("Saved FSD state is invalid; starting fresh")
            return None
        return checkpoint

    def _restore(self, checkpoint: Checkpoint) -> None:
        self.goal = checkpoint.goal
        self.plan = checkpoint.plan
        self.state = checkpoint.state
        self.fsd_config = checkpoint.config
        self.git_state = checkpoint.git_state
        self.reporter.start(checkpoint.goal)
        self.reporter.output(
            f"Resuming: {len(self.state.completed_milestones)}/{len(self.plan.milestones)} "
            f"milestones complete, ${self.state.total_cost_usd:.2f} spent"
        )

    async def _plan(self) -> None:
        self.state.mode = FSDMode.PLANNING
        self.reporter.planning_start()
        try:
            plan = await self.planner.generate_plan(
                self.goal, read_project_context(self.config.project_dir),
            )
            plan.validate_graph()
        except FSDError:
            raise
        except Exception as e:
            raise PlanningError(f"Failed to generate plan: {type(e).__name__}: {e}") from e

        self.plan = plan
        # Planning spend is reported but not counted against max_cost_usd
        planning_cost = getattr(self.planner, "last_cost", None)
        if planning_cost is not None:
            logger.info(f"Planning cost ${planning_cost.total_cost_usd:.4f}")
            self.reporter.output(f"Planning cost: ${planning_cost.total_cost_usd:.2f}")
        self.reporter.planning_complete()
        self.reporter.show_plan(plan)
        self.reporter.show_blockers(plan.outstanding_blockers)

    async def _confirm_start(self) -> bool:
        if not await self.reporter.confirm("Proceed with execution?"):
            self.reporter.output("Cancelled.")
            return False
        if self.plan.outstanding_blockers:
            if not await self.reporter.confirm("Have you completed the manual steps above?"):
                self.reporter.output("Complete the manual steps first, then run again.")
                return False
        return True

    async def _protect_git(self, resumed: bool) -> None:
        if resumed and self.git_state is not None:
            await self.guard.restore(self.git_state)
        else:
            self.git_state = await self.guard.establish(self.goal)
        if self.git_state is not None:
            self.reporter.git_branch(self.git_state.fsd_branch)

    def _build_components(self) -> None:
        if self._invoker is None:
            approvals = ToolApprovals(
                self.reporter,
                self.config.project_dir,
                sensitive_approval=self.fsd_config.sensitive_approval,
                input_timeout=self.config.human_input_timeout_seconds,
                redactor=self.redactor,
            )
            self._invoker = AgentInvoker(
                self.config,
                approvals=approvals,
                git_protected=self.git_state is not None,
                on_text=self.reporter.output,
                redactor=self.redactor,
            )
        self.rules = build_rules(self.guard.rules(self.git_state), self.config.project_dir)
        self.executor = MilestoneExecutor(
            self._invoker,
            self.config.project_dir,
            verify_commands=self.config.verify_commands,
            verify_timeout=self.config.verify_timeout_seconds,
            reporter=self.reporter,
            redactor=self.redactor,
        )
        self.qa = QAReviewer(
            self._invoker,
            self.config.project_dir,
            timeout=self.config.qa_timeout_seconds,
            redactor=self.redactor,
        )

    async def _execute(self) -> RunOutcome:
        plan, state = self.plan, self.state
        state.mode = FSDMode.EXECUTING
        self._persist()

        while True:
            if self._shutdown_requested:
                raise RunInterrupted("Shutdown requested")
            milestone = next_milestone(plan, state)
            if milestone is None:
                break

            status = await self._run_milestone(milestone)

            if status == MilestoneStatus.COMPLETED:
                if len(state.completed_milestones) % self.fsd_config.checkpoint_interval == 0:
                    self._persist()
                if self.fsd_config.sensitive_approval and next_milestone(plan, state) is not None:
                    if not await self.reporter.confirm("Continue to the next milestone?"):
                        self._persist()
                        self.reporter.output("Stopped. Resume later with --resume")
                        return self._outcome(RunStatus.STOPPED)

        unfinished = [m.id for m in plan.milestones if not state.is_finished(m.id)]
        if unfinished:
            raise MilestoneExecutionError(
                unfinished[0], f"unreachable; dependencies never completed ({', '.join(unfinished)})",
            )
        return await self._complete()

    async def _run_milestone(self, milestone: Milestone) -> MilestoneStatus:
        state, max_iter = self.state, self.fsd_config.max_iterations_per_milestone
        state.current_milestone_id = milestone.id
        self.reporter.milestone_start(milestone.id, milestone.title)

        if state.milestone_attempts.get(milestone.id, 0) >= max_iter:
            logger.info(f"Milestone {milestone.id} exhausted its attempts in an earlier run; retrying")
            state.milestone_attempts[milestone.id] = 0

        prompt = self.executor.milestone_prompt(milestone, state.learnings, self.rules)
        errors: list[str] = []

        while state.milestone_attempts.get(milestone.id, 0) < max_iter:
            await self._boundary()
            attempt = state.milestone_attempts.get(milestone.id, 0) + 1
            state.milestone_attempts[milestone.id] = attempt
            logger.info(
                f"Milestone {milestone.id} attempt {attempt}/{max_iter}",
                extra={"milestone": milestone.id, "attempt": attempt},
            )
            self.reporter.output(f"Attempt {attempt}/{max_iter} for {milestone.title}")

            outcome = await self.executor.execute(milestone, prompt, state.agent_session_id)
            self._bill(outcome.cost)
            state.total_prompts += 1
            if outcome.session_id:
                state.agent_session_id = outcome.session_id
            self._report_progress()
            for learning in outcome.learnings:
                state.add_learning(learning)

            if not outcome.success:
                errors = [self.redactor(err) for err in outcome.errors]
                for err in errors:
                    self.reporter.output(f"Attempt failed: {err.splitlines()[0] if err else err}")
                prompt = self.executor.retry_prompt(milestone, errors, state.learnings, self.rules)
                continue

            if self.config.skip_qa:
                return self._milestone_done(milestone, attempt, outcome.session_id)

            await self._boundary()
            state.mode = FSDMode.QA
            self.reporter.qa_start(milestone.id)
            report, qa_cost = await self.qa.spawn_qa_agent(milestone)
            state.mode = FSDMode.EXECUTING
            self._bill(qa_cost)
            self._report_progress()
            self.qa.save_qa_report(report, milestone)
            self.reporter.qa_complete(report.passed)

            try:
                require_pass(report, milestone)
            except QAFailureError as e:
                logger.info(str(e))
                for issue in report.issues:
                    self.reporter.qa_issue(issue.severity.value, self.redactor(issue.description))
                errors = [self.redactor(f"[{i.severity.value}] {i.description}") for i in report.issues]
                prompt = self.qa.generate_qa_fix_prompt(
                    milestone, report.issues, state.learnings, self.rules,
                )
                continue

            return self._milestone_done(milestone, attempt, outcome.session_id)

        return self._milestone_exhausted(milestone, errors)

    def _milestone_done(self, milestone: Milestone, attempts: int, session_id: str | None) -> MilestoneStatus:
        self.state.mark_completed(milestone.id)
        self.state.current_milestone_id = None
        self.reporter.milestone_complete(milestone.id, milestone.title)
        self.persistence.append_progress(ProgressEntry(
            timestamp=datetime.now(),
            milestone_id=milestone.id,
            milestone_title=milestone.title,
            status=MilestoneStatus.COMPLETED,
            summary=f"Completed in {attempts} attempt(s)",
            attempts=attempts,
            session_id=session_id,
        ))
        return MilestoneStatus.COMPLETED

    def _milestone_exhausted(self, milestone: Milestone, errors: list[str]) -> MilestoneStatus:
        state, max_iter = self.state, self.fsd_config.max_iterations_per_milestone
        state.failed_attempts += 1
        state.current_milestone_id = None
        self.reporter.milestone_failed(milestone.id, milestone.title, errors)

        action = exhaustion_policy(milestone, self.plan, state)
        self.persistence.append_progress(ProgressEntry(
            timestamp=datetime.now(),
            milestone_id=milestone.id,
            milestone_title=milestone.title,
            status=MilestoneStatus.SKIPPED if action == ExhaustionAction.SKIP else MilestoneStatus.FAILED,
            summary=f"Failed after {max_iter} attempts",
            attempts=max_iter,
            session_id=state.agent_session_id,
            error=errors[0] if errors else None,
        ))

        if action == ExhaustionAction.ABORT:
            raise MilestoneExhaustedError(
                milestone.id, max_iter, unfinished_dependents(milestone.id, self.plan, state),
            )
        state.mark_skipped(milestone.id)
        self.reporter.milestone_skipped(milestone.id, "max attempts reached; nothing depends on it")
        return MilestoneStatus.SKIPPED

    async def _complete(self) -> RunOutcome:
        state = self.state
        state.mode = FSDMode.COMPLETE
        summary = self._summary()
        self.reporter.complete(summary)

        if state.learnings:
            self.reporter.output("Learned rules:")
            for learning in state.learnings:
                self.reporter.output(f"  - {learning}")

        if self.git_state is not None:
            self.reporter.git_complete(await self.guard.finalize(self.git_state))

        try:
            self.persistence.clear()
        except PersistenceError as e:
            logger.warning(str(e))
        return RunOutcome(
            status=RunStatus.COMPLETE,
            summary=summary,
            charged_credits=self.ledger.charged_credits,
            final_cost_usd=self.ledger.final_cost_usd,
        )

    # --- Boundaries: pause, budget, shutdown ---

    async def _boundary(self) -> None:
        """Safe point between agent calls: honor pause and shutdown, then enforce budgets."""
        if self.pause.is_paused:
            previous = self.state.mode
            self.state.mode = FSDMode.PAUSED
            self._persist()
            self.reporter.output("Paused. Send SIGUSR2 to resume.")
            await self.pause.wait_if_paused()
            self.state.mode = previous
            if not self._shutdown_requested:
                self.reporter.output("Resumed.")

        if self._shutdown_requested:
            raise RunInterrupted("Shutdown requested")
        self._check_budget()

    def _check_budget(self) -> None:
        state, cfg = self.state, self.fsd_config
        if state.total_cost_usd >= cfg.max_cost_usd:
            raise BudgetExceededError(
                f"Cost limit reached: ${state.total_cost_usd:.2f} of ${cfg.max_cost_usd:.2f}",
                state.total_cost_usd,
                state.total_prompts,
            )
        if state.total_prompts >= cfg.max_total_prompts:
            raise BudgetExceededError(
                f"Prompt limit reached: {state.total_prompts}/{cfg.max_total_prompts}",
                state.total_cost_usd,
                state.total_prompts,
            )
        if not self._cost_warned and state.total_cost_usd >= cfg.max_cost_usd * COST_WARNING_RATIO:
            self._cost_warned = True
            self.reporter.output(
                f"Warning: ${state.total_cost_usd:.2f} of ${cfg.max_cost_usd:.2f} budget used"
            )

    def _bill(self, cost: CostSnapshot) -> None:
        charge = self.ledger.record(cost)
        self.state.total_cost_usd += charge.actual_cost_usd
        logger.debug(
            f"Charged {charge.charged_credits} credits "
            f"(${charge.actual_cost_usd:.4f} actual, ${charge.final_cost_usd:.4f} final)",
            extra={"milestone": self.state.current_milestone_id, "credits": charge.charged_credits},
        )

    def _report_progress(self) -> None:
        self.reporter.progress(
            self.state.total_cost_usd, self.fsd_config.max_cost_usd, self.state.total_prompts,
        )

    # --- Persistence ---

    def _persist(self) -> None:
        if self.plan is None or self.state is None or self.goal is None:
            return
        try:
            self.persistence.save(Checkpoint(
                goal=self.goal,
                plan=self.plan,
                state=self.state,
                config=self.fsd_config,
                git_state=self.git_state,
            ))
        except PersistenceError as e:
            logger.error(f"Checkpoint not saved: {e}")

    def _mark_and_persist(self, mode: FSDMode) -> None:
        if self.state is None:
            return
        self.state.mode = mode
        self._persist()

    def _summary(self) -> RunSummary:
        state = self.state
        elapsed = datetime.now() - state.start_time
        return RunSummary(
            milestones_completed=len(state.completed_milestones),
            milestones_total=len(self.plan.milestones) if self.plan else 0,
            milestones_skipped=len(state.skipped_milestones),
            total_prompts=state.total_prompts,
            total_cost_usd=state.total_cost_usd,
            elapsed_minutes=int(elapsed.total_seconds() // 60),
            failed_attempts=state.failed_attempts,
            charged_credits=self.ledger.charged_credits,
        )

    def _outcome(self, status: RunStatus, error: str | None = None) -> RunOutcome:
        return RunOutcome(
            status=status,
            summary=self._summary() if self.state is not None else None,
            error=error,
            charged_credits=self.ledger.charged_credits,
            final_cost_usd=self.ledger.final_cost_usd,
        )

    # --- Signals ---

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)
        loop.add_signal_handler(signal.SIGUSR1, self._handle_pause_signal)
        loop.add_signal_handler(signal.SIGUSR2, self._handle_resume_signal)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGUSR1, signal.SIGUSR2):
            loop.remove_signal_handler(sig)

    def _handle_shutdown_signal(self, sig: signal.Signals) -> None:
        """SIGINT/SIGTERM: kill the agent subprocess and request shutdown."""
        if self._shutdown_requested:
            # Second signal: force exit immediately
            logger.warning(f"Second {sig.name} received, force exiting")
            AgentInvoker.kill_active_subprocess()
            raise SystemExit(1)

        self._shutdown_requested = True
        logger.info(f"{sig.name} received, shutting down gracefully...")
        logger.info("  (press Ctrl-C again to force-quit)")
        AgentInvoker.kill_active_subprocess()
        # Wake anything blocked on the pause gate so it sees the shutdown
        self.pause.resume()

    def _handle_pause_signal(self) -> None:
        if not self.pause.is_paused:
            logger.info("Pause requested; pausing after the current step")
            self.pause.pause()

    def _handle_resume_signal(self) -> None:
        if self.pause.is_paused:
            logger.info("Resume requested")
            self.pause.resume()
