"""Configuration loading: defaults → fsd.toml → CLI flags."""

from __future__ import annotations

import sys

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from .models import BillingConfig, FSDConfig

CONFIG_FILE = "fsd.toml"

# CLI flag name -> key inside the [fsd] / [billing] tables
_FSD_FLAGS = {
    "max_cost": "max_cost_usd",
    "checkpoint": "checkpoint_interval",
    "max_iterations": "max_iterations_per_milestone",
    "max_prompts": "max_total_prompts",
}
_BILLING_FLAGS = {
    "billing_mode": "mode",
    "billing_context": "context",
}


class OrchestratorConfig(BaseModel):
    """All FSD settings. Loaded from defaults, then fsd.toml, then CLI flags."""

    project_dir: Path = Field(default_factory=lambda: Path.cwd())

    # Agent sessions
    model: str = "sonnet"
    planning_model: str = "opus"
    max_turns_per_milestone: int = 200
    stall_timeout_seconds: float = 300.0
    human_input_timeout_seconds: float = 120.0
    qa_timeout_seconds: float = 600.0
    permission_mode: Literal["default", "acceptEdits", "bypassPermissions"] = "acceptEdits"
    allowed_tools: list[str] = Field(default_factory=lambda: [
        "Read", "Write", "Edit", "Bash", "Glob", "Grep",
        "WebFetch", "WebSearch", "AskUserQuestion", "Task",
    ])
    disallowed_tools: list[str] = Field(default_factory=list)
    mcp_servers: dict[str, dict[str, Any]] = Field(default_factory=dict)

    # Verification after each attempt; a missing script counts as passed
    verify_commands: list[str] = Field(default_factory=lambda: [
        "pnpm build", "pnpm typecheck", "pnpm test", "pnpm lint",
    ])
    verify_timeout_seconds: float = 600.0

    # Safety
    allow_unprotected: bool = False
    security_hook_command: str = "vibesafu"
    extra_secret_patterns: list[str] = Field(default_factory=list)

    # Run switches
    dry_run: bool = False
    resume: bool = False
    skip_qa: bool = False
    clear: bool = False
    interactive: bool = True
    plan_file: Path | None = None

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Path(".claude/logs")
    structured_log: bool = True

    fsd: FSDConfig = Field(default_factory=FSDConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)


def load_config(cli_args: dict[str, Any]) -> OrchestratorConfig:
    """Load config from defaults → fsd.toml → CLI args."""
    project_dir = Path(cli_args.get("project") or ".").resolve()
    toml_path = project_dir / CONFIG_FILE

    # Start with defaults
    config_data: dict[str, Any] = {"project_dir": project_dir}
    fsd_data: dict[str, Any] = {}
    billing_data: dict[str, Any] = {}

    # Layer in TOML if present
    if toml_path.exists():
        with open(toml_path, "rb") as f:
            toml_data = tomllib.load(f)
        fsd_data.update(toml_data.pop("fsd", {}))
        billing_data.update(toml_data.pop("billing", {}))
        config_data.update(toml_data)

    # Layer in CLI overrides (only non-None values)
    for key, value in cli_args.items():
        if value is None or key in ("project", "goal"):
            continue
        if key in _FSD_FLAGS:
            fsd_data[_FSD_FLAGS[key]] = value
        elif key in _BILLING_FLAGS:
            billing_data[_BILLING_FLAGS[key]] = value
        else:
            config_data[key] = value

    # Ensure project_dir is always set
    config_data["project_dir"] = project_dir
    config_data["fsd"] = FSDConfig(**fsd_data)
    config_data["billing"] = BillingConfig(**billing_data)

    return OrchestratorConfig(**config_data)
