"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from claude_fsd.config import OrchestratorConfig, load_config
from claude_fsd.models import BillingContext, BillingMode, FSDConfig


class TestDefaults:
    def test_default_values(self):
        config = OrchestratorConfig()
        assert config.model == "sonnet"
        assert config.planning_model == "opus"
        assert config.permission_mode == "acceptEdits"
        assert config.allow_unprotected is False
        assert "Read" in config.allowed_tools
        assert "Bash" in config.allowed_tools
        assert "AskUserQuestion" in config.allowed_tools

    def test_budget_defaults(self):
        fsd = OrchestratorConfig().fsd
        assert fsd.max_cost_usd == 10.0
        assert fsd.max_iterations_per_milestone == 5
        assert fsd.max_total_prompts == 100
        assert fsd.checkpoint_interval == 3
        assert fsd.sensitive_approval is True
        assert fsd.auto_resume is False

    def test_billing_defaults(self):
        billing = OrchestratorConfig().billing
        assert billing.mode == BillingMode.BYOK
        assert billing.context == BillingContext.CLI


class TestFSDConfigValidation:
    def test_rejects_non_positive_budget(self):
        with pytest.raises(ValidationError):
            FSDConfig(max_cost_usd=0)

    def test_rejects_zero_iterations(self):
        with pytest.raises(ValidationError):
            FSDConfig(max_iterations_per_milestone=0)

    def test_rejects_zero_checkpoint_interval(self):
        with pytest.raises(ValidationError):
            FSDConfig(checkpoint_interval=0)

    def test_is_frozen(self):
        config = FSDConfig()
        with pytest.raises(ValidationError):
            config.max_cost_usd = 50.0


class TestLoadConfig:
    def test_loads_from_cli_args(self, tmp_path: Path):
        config = load_config({
            "project": str(tmp_path),
            "model": "opus",
            "max_cost": 25.0,
            "checkpoint": 2,
            "dry_run": True,
        })
        assert config.project_dir == tmp_path.resolve()
        assert config.model == "opus"
        assert config.fsd.max_cost_usd == 25.0
        assert config.fsd.checkpoint_interval == 2
        assert config.dry_run is True

    def test_ignores_none_cli_args(self, tmp_path: Path):
        config = load_config({
            "project": str(tmp_path),
            "model": None,
            "max_cost": None,
            "goal": "Build a todo app",
        })
        assert config.model == "sonnet"
        assert config.fsd.max_cost_usd == 10.0

    def test_loads_toml(self, tmp_path: Path):
        toml_content = """\
model = "haiku"
verify_commands = ["make test"]
extra_secret_patterns = ["corp-[0-9]{8}"]

[fsd]
max_cost_usd = 3.5
max_total_prompts = 40
auto_resume = true

[billing]
mode = "managed"
context = "cloud"
"""
        (tmp_path / "fsd.toml").write_text(toml_content)

        config = load_config({"project": str(tmp_path)})
        assert config.model == "haiku"
        assert config.verify_commands == ["make test"]
        assert config.extra_secret_patterns == ["corp-[0-9]{8}"]
        assert config.fsd.max_cost_usd == 3.5
        assert config.fsd.max_total_prompts == 40
        assert config.fsd.auto_resume is True
        assert config.billing.mode == BillingMode.MANAGED
        assert config.billing.context == BillingContext.CLOUD

    def test_cli_overrides_toml(self, tmp_path: Path):
        toml_content = """\
model = "haiku"

[fsd]
max_cost_usd = 3.5
checkpoint_interval = 5

[billing]
mode = "managed"
"""
        (tmp_path / "fsd.toml").write_text(toml_content)

        config = load_config({
            "project": str(tmp_path),
            "model": "opus",
            "max_cost": 8.0,
            "billing_mode": "byok",
        })
        assert config.model == "opus"
        assert config.fsd.max_cost_usd == 8.0
        assert config.fsd.checkpoint_interval == 5
        assert config.billing.mode == BillingMode.BYOK

    def test_invalid_budget_flag_rejected(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            load_config({"project": str(tmp_path), "max_cost": -1.0})
