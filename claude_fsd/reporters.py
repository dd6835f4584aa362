"""Output handlers: plain console output, or a rich terminal UI."""

from __future__ import annotations

import asyncio
from typing import Protocol

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .models import Plan, RunSummary, UserBlocker


class OutputHandler(Protocol):
    """Everything the orchestrator tells the operator, plus yes/no confirmation."""

    def start(self, goal: str) -> None: ...
    def complete(self, summary: RunSummary) -> None: ...
    def error(self, message: str) -> None: ...

    def planning_start(self) -> None: ...
    def planning_complete(self) -> None: ...
    def show_plan(self, plan: Plan) -> None: ...

    def milestone_start(self, milestone_id: str, title: str) -> None: ...
    def milestone_complete(self, milestone_id: str, title: str) -> None: ...
    def milestone_failed(self, milestone_id: str, title: str, errors: list[str] | None = None) -> None: ...
    def milestone_skipped(self, milestone_id: str, reason: str) -> None: ...

    def qa_start(self, milestone_id: str) -> None: ...
    def qa_complete(self, passed: bool) -> None: ...
    def qa_issue(self, severity: str, description: str) -> None: ...

    def output(self, text: str) -> None: ...
    def progress(self, cost_usd: float, max_cost_usd: float, prompts: int) -> None: ...

    async def confirm(self, question: str) -> bool: ...

    def security_status(self, active: bool) -> None: ...
    def git_branch(self, branch: str) -> None: ...
    def git_complete(self, summary: str) -> None: ...
    def show_blockers(self, blockers: list[UserBlocker]) -> None: ...


async def _async_input(prompt: str) -> str:
    """Non-blocking input that works with asyncio."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: input(prompt))


class ConsoleReporter:
    """Plain line-oriented output."""

    def __init__(self, input_timeout: float | None = None):
        self.input_timeout = input_timeout

    def start(self, goal: str) -> None:
        print("FSD Mode - Planning\n")
        print(f"Goal: {goal}\n")

    def complete(self, summary: RunSummary) -> None:
        print("\nFSD Mode Complete!\n")
        print(f"  Milestones: {summary.milestones_completed}/{summary.milestones_total}")
        if summary.milestones_skipped:
            print(f"  Skipped: {summary.milestones_skipped}")
        print(f"  Prompts: {summary.total_prompts}")
        print(f"  Cost: ${summary.total_cost_usd:.2f}")
        if summary.charged_credits:
            print(f"  Charged: {summary.charged_credits} credits")
        print(f"  Time: {summary.elapsed_minutes} minutes")
        print(f"  Failed attempts: {summary.failed_attempts}")

    def error(self, message: str) -> None:
        print(f"Error: {message}")

    def planning_start(self) -> None:
        print("Generating plan...")

    def planning_complete(self) -> None:
        print("Plan generated")

    def show_plan(self, plan: Plan) -> None:
        print("\nMilestones\n")
        for m in plan.milestones:
            print(f"  {m.id}. {m.title} [{m.size.value}]")
            if m.depends_on:
                print(f"     Depends on: {', '.join(m.depends_on)}")
        print("\nEstimates")
        print(f"  Cost: ~${plan.estimated_cost_usd:.2f}")
        print(f"  Time: ~{plan.estimated_time_minutes} minutes")
        if plan.risks:
            print("\nRisks")
            for risk in plan.risks:
                print(f"  - {risk}")
        print()

    def milestone_start(self, milestone_id: str, title: str) -> None:
        print(f"\n> {milestone_id}: {title}\n")

    def milestone_complete(self, milestone_id: str, title: str) -> None:
        print(f"Done: {title}")

    def milestone_failed(self, milestone_id: str, title: str, errors: list[str] | None = None) -> None:
        print(f"Failed: {title}")
        for err in errors or []:
            print(f"  {err}")

    def milestone_skipped(self, milestone_id: str, reason: str) -> None:
        print(f"Skipping {milestone_id} ({reason})")

    def qa_start(self, milestone_id: str) -> None:
        print(f"Running QA for {milestone_id}...")

    def qa_complete(self, passed: bool) -> None:
        print("QA passed" if passed else "QA found issues")

    def qa_issue(self, severity: str, description: str) -> None:
        print(f"  [{severity}] {description}")

    def output(self, text: str) -> None:
        print(text)

    def progress(self, cost_usd: float, max_cost_usd: float, prompts: int) -> None:
        print(f"  Cost: ${cost_usd:.2f} / ${max_cost_usd:.2f} | Prompts: {prompts}")

    async def confirm(self, question: str) -> bool:
        try:
            answer = await asyncio.wait_for(
                _async_input(f"{question} (y/N): "),
                timeout=self.input_timeout,
            )
        except asyncio.TimeoutError:
            print(f"\n  [TIMEOUT] No response after {self.input_timeout:.0f}s, assuming no.")
            return False
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    def security_status(self, active: bool) -> None:
        if active:
            print("Security hook active (pre-execution command checks)")
        else:
            print("Security hook not installed; only built-in rules apply")

    def git_branch(self, branch: str) -> None:
        print(f"Working on branch: {branch}")

    def git_complete(self, summary: str) -> None:
        print(f"\n{summary}\n")

    def show_blockers(self, blockers: list[UserBlocker]) -> None:
        if not blockers:
            return
        print("\nBefore execution, complete these manual steps:\n")
        for i, b in enumerate(blockers, start=1):
            print(f"  {i}. {b.description}")
            if b.check_instruction:
                print(f"     Check: {b.check_instruction}")
        print()


class InteractiveReporter:
    """Rich terminal UI: panels for the plan and summary, styled progress lines."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def start(self, goal: str) -> None:
        self.console.print(Panel(escape(goal), title="FSD MODE", border_style="bright_blue"))

    def complete(self, summary: RunSummary) -> None:
        table = Table(title="SUMMARY", show_header=False, border_style="bright_blue")
        table.add_column("Metric", style="bold")
        table.add_column("Value")
        table.add_row("Milestones", f"{summary.milestones_completed}/{summary.milestones_total}")
        if summary.milestones_skipped:
            table.add_row("Skipped", str(summary.milestones_skipped))
        table.add_row("Prompts", str(summary.total_prompts))
        table.add_row("Cost", f"${summary.total_cost_usd:.2f}")
        if summary.charged_credits:
            table.add_row("Charged", f"{summary.charged_credits} credits")
        table.add_row("Time", f"{summary.elapsed_minutes} min")
        table.add_row("Failed attempts", str(summary.failed_attempts))
        self.console.print(table)

    def error(self, message: str) -> None:
        self.console.print(f"[red bold]Error:[/red bold] {escape(message)}")

    def planning_start(self) -> None:
        self.console.print("[dim]Generating plan...[/dim]")

    def planning_complete(self) -> None:
        self.console.print("[green]Plan generated[/green]")

    def show_plan(self, plan: Plan) -> None:
        table = Table(show_header=True, header_style="bold", box=None)
        table.add_column("ID")
        table.add_column("Milestone")
        table.add_column("Size")
        table.add_column("Depends on", style="dim")
        for m in plan.milestones:
            table.add_row(m.id, escape(m.title), m.size.value, ", ".join(m.depends_on))
        self.console.print(table)

        detail = f"Cost: ~${plan.estimated_cost_usd:.2f}\nTime: ~{plan.estimated_time_minutes} minutes"
        if plan.risks:
            detail += "\n\nRisks:\n" + "\n".join(f"- {escape(r)}" for r in plan.risks)
        self.console.print(Panel(detail, title="PLAN GENERATED", border_style="green"))

    def milestone_start(self, milestone_id: str, title: str) -> None:
        self.console.rule(f"[bold]{milestone_id}: {escape(title)}")

    def milestone_complete(self, milestone_id: str, title: str) -> None:
        self.console.print(f"[green]Done:[/green] {escape(title)}")

    def milestone_failed(self, milestone_id: str, title: str, errors: list[str] | None = None) -> None:
        self.console.print(f"[red]Failed:[/red] {escape(title)}")
        for err in errors or []:
            self.console.print(f"  [red]{escape(err)}[/red]")

    def milestone_skipped(self, milestone_id: str, reason: str) -> None:
        self.console.print(f"[dim]Skipping {milestone_id} ({escape(reason)})[/dim]")

    def qa_start(self, milestone_id: str) -> None:
        self.console.print(f"[dim]Running QA for {milestone_id}...[/dim]")

    def qa_complete(self, passed: bool) -> None:
        if passed:
            self.console.print("[green]QA passed[/green]")
        else:
            self.console.print("[yellow]QA found issues[/yellow]")

    def qa_issue(self, severity: str, description: str) -> None:
        color = {"critical": "red", "major": "yellow"}.get(severity, "dim")
        self.console.print(f"  [{color}][{severity}][/{color}] {escape(description)}")

    def output(self, text: str) -> None:
        self.console.print(f"  [dim]│[/dim] {escape(text)}")

    def progress(self, cost_usd: float, max_cost_usd: float, prompts: int) -> None:
        style = "red" if cost_usd >= max_cost_usd * 0.8 else "dim"
        self.console.print(
            f"[{style}]Cost: ${cost_usd:.2f} / ${max_cost_usd:.2f} | Prompts: {prompts}[/{style}]"
        )

    async def confirm(self, question: str) -> bool:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, lambda: Confirm.ask(escape(question), console=self.console, default=False)
            )
        except EOFError:
            return False

    def security_status(self, active: bool) -> None:
        if active:
            self.console.print("[green]Security hook active[/green]")
        else:
            self.console.print("[yellow]Security hook not installed; only built-in rules apply[/yellow]")

    def git_branch(self, branch: str) -> None:
        self.console.print(f"Working on branch [cyan]{escape(branch)}[/cyan]")

    def git_complete(self, summary: str) -> None:
        self.console.print(Panel(escape(summary), title="NEXT STEPS", border_style="cyan"))

    def show_blockers(self, blockers: list[UserBlocker]) -> None:
        if not blockers:
            return
        lines = []
        for i, b in enumerate(blockers, start=1):
            lines.append(f"{i}. {escape(b.description)}")
            if b.check_instruction:
                lines.append(f"   [dim]Check: {escape(b.check_instruction)}[/dim]")
        self.console.print(Panel("\n".join(lines), title="MANUAL STEPS REQUIRED", border_style="yellow"))
