"""Cooperative pause/resume gate for the FSD run loop.

The run loop awaits `wait_if_paused()` at safe boundaries (between milestone
attempts and QA rounds). An in-flight agent call always finishes first.
"""

from __future__ import annotations

import asyncio


class PauseController:
    """Broadcast gate: every task blocked in `wait_if_paused()` is released by one `resume()`."""

    def __init__(self) -> None:
        self._running = asyncio.Event()
        self._running.set()

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def pause(self) -> None:
        """Future calls to wait_if_paused() block until resume(). No-op if already paused."""
        self._running.clear()

    def resume(self) -> None:
        """Release all waiters. No-op if not paused."""
        self._running.set()

    async def wait_if_paused(self) -> None:
        if self._running.is_set():
            return
        await self._running.wait()

    def reset(self) -> None:
        """Force the running state with a fresh gate, for reuse across runs/event loops."""
        self._running = asyncio.Event()
        self._running.set()
