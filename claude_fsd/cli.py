"""CLI entry point: fsd [goal] [options]."""

from __future__ import annotations

import argparse
import asyncio
import sys

from .models import BillingContext, BillingMode


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fsd",
        description="Full Self-Driving mode -- autonomous multi-milestone execution with Claude Code",
    )
    parser.add_argument("goal", nargs="?", help="What to build")
    parser.add_argument(
        "--project", "-p", type=str, default=".",
        help="Project directory (default: current dir)",
    )
    parser.add_argument("--max-cost", dest="max_cost", type=float, help="Maximum cost in USD")
    parser.add_argument(
        "--checkpoint", type=int, metavar="N",
        help="Save a checkpoint every N completed milestones",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Show the plan only, do not execute",
    )
    parser.add_argument(
        "--resume", action="store_true",
        help="Resume the saved FSD session",
    )
    parser.add_argument(
        "--skip-qa", action="store_true",
        help="Skip the QA agent after each milestone",
    )
    parser.add_argument(
        "--clear", action="store_true",
        help="Delete the saved FSD session",
    )
    parser.add_argument(
        "--no-ink", action="store_true",
        help="Plain console output instead of the interactive UI",
    )
    parser.add_argument(
        "--plan", dest="plan_file", type=str,
        help="Load the plan from a JSON file instead of generating it",
    )
    parser.add_argument(
        "--billing-mode", choices=[m.value for m in BillingMode],
        help="byok (your API key) or managed",
    )
    parser.add_argument(
        "--billing-context", choices=[c.value for c in BillingContext],
        help="Where the run is billed from",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Verbose logging",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    from .config import load_config
    from .errors import FSDError
    from .logging_config import setup_logger
    from .orchestrator import FSDOrchestrator
    from .redaction import redact_secrets
    from .reporters import ConsoleReporter, InteractiveReporter

    args = build_parser().parse_args(argv)

    cli_args = {
        "project": args.project,
        "max_cost": args.max_cost,
        "checkpoint": args.checkpoint,
        "dry_run": args.dry_run if args.dry_run else None,
        "resume": args.resume if args.resume else None,
        "skip_qa": args.skip_qa if args.skip_qa else None,
        "clear": args.clear if args.clear else None,
        "interactive": False if args.no_ink else None,
        "plan_file": args.plan_file,
        "billing_mode": args.billing_mode,
        "billing_context": args.billing_context,
    }
    config = load_config(cli_args)
    if args.verbose:
        config.log_level = "DEBUG"
    setup_logger(config, verbose=args.verbose)

    if config.interactive and sys.stdout.isatty():
        reporter = InteractiveReporter()
    else:
        reporter = ConsoleReporter(input_timeout=config.human_input_timeout_seconds)

    orchestrator = FSDOrchestrator(config, reporter)
    try:
        outcome = asyncio.run(orchestrator.run(args.goal))
    except FSDError as e:
        reporter.error(redact_secrets(str(e)))
        return 1
    except KeyboardInterrupt:
        # Signal handler already cleaned up
        return 1
    return outcome.exit_code


def cli_entry() -> None:
    """Entry point for pyproject.toml console_scripts."""
    sys.exit(main())
