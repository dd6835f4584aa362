"""Logging for FSD runs: a console stream plus a JSON-lines run log, both redacted."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .redaction import RedactingFilter, SecretRedactor

if TYPE_CHECKING:
    from .config import OrchestratorConfig

LOGGER_NAME = "fsd"

# Attributes passed through ``extra=`` that end up in the run log
CONTEXT_FIELDS = ("milestone", "attempt", "credits")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, carrying milestone context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def run_log_path(config: OrchestratorConfig, started: datetime | None = None) -> Path:
    """Where this run's JSON-lines log goes under the project's log directory."""
    stamp = (started or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return config.project_dir / config.log_dir / f"fsd-{stamp}.jsonl"


def setup_logger(config: OrchestratorConfig, verbose: bool = False) -> logging.Logger:
    """Configure the "fsd" logger once per process.

    Every handler gets the same RedactingFilter, so credentials never reach the
    terminal or the run log.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if verbose:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if logger.handlers:
        return logger

    redacting = RedactingFilter(SecretRedactor().with_patterns(config.extra_secret_patterns))

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(message)s", datefmt="%H:%M:%S"))
    console.addFilter(redacting)
    logger.addHandler(console)

    if config.structured_log:
        path = run_log_path(config)
        path.parent.mkdir(parents=True, exist_ok=True)
        run_log = logging.FileHandler(path)
        run_log.setFormatter(JSONFormatter())
        run_log.addFilter(redacting)
        logger.addHandler(run_log)

    return logger
