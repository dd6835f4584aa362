"""External tool capability: installed-check plus command execution.

Git and the external security hook are reached only through this interface so
tests can swap in an in-memory runner.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger("fsd")


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout.strip() or self.stderr.strip()


class CommandRunner(Protocol):
    """Runs one external executable."""

    def check_installed(self) -> bool: ...

    async def run(self, args: list[str], cwd: Path | None = None) -> CommandResult: ...


class SubprocessRunner:
    """CommandRunner backed by a real child process."""

    def __init__(self, executable: str, timeout: float = 60.0):
        self.executable = executable
        self.timeout = timeout

    def check_installed(self) -> bool:
        return shutil.which(self.executable) is not None

    async def run(self, args: list[str], cwd: Path | None = None) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug(f"{self.executable} could not start: {e}")
            return CommandResult(returncode=127, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CommandResult(
                returncode=124,
                stderr=f"{self.executable} timed out after {self.timeout:.0f}s",
            )

        return CommandResult(
            returncode=proc.returncode if proc.returncode is not None else 1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )


async def run_shell(command: str, cwd: Path, timeout: float = 600.0) -> CommandResult:
    """Run a shell command line (project verification scripts)."""
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(returncode=124, stderr=f"Timed out after {timeout:.0f}s: {command}")
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else 1,
        stdout=stdout.decode(errors="replace"),
    )
