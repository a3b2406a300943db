"""Polling controller: re-runs bulk build reconciliation until the build finishes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from config import DEFAULT_POLL_INTERVAL_SECONDS
from state import AppState

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


class PollingController:
    """Owns the background task that refreshes an in-progress bulk build.

    Starts when the session's bulk build is non-terminal, stops when it
    becomes terminal or is cleared. There is never more than one task.
    """

    def __init__(
        self,
        state: AppState,
        reconcile: Callable[[], Awaitable[object]],
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.state = state
        self.interval = interval
        self._reconcile = reconcile
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._unsubscribe = state.subscribe(self._on_state_change)

    @property
    def status(self) -> PollState:
        if self._task is not None and not self._task.done():
            return PollState.POLLING
        return PollState.IDLE

    def _should_poll(self) -> bool:
        bulk = self.state.bulk_build
        return bulk is not None and not bulk.status.is_terminal

    def _on_state_change(self, state: AppState) -> None:
        if self._should_poll():
            self.start()
        else:
            self.stop()

    def start(self) -> bool:
        """Begin polling if there is unfinished work. Returns True if a task was started."""
        if self.status is PollState.POLLING or not self._should_poll():
            return False
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Polling bulk build %s every %ss", self.state.bulk_build.id, self.interval)
        return True

    def stop(self) -> None:
        """Cancel the polling task, if any."""
        task = self._task
        if task is None:
            return
        # The loop exits by itself when the change came from its own reconcile
        if task is asyncio.current_task():
            return
        self._task = None
        if task.done():
            return
        task.cancel()
        logger.info("Stopped polling bulk build")

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            if not self._should_poll():
                break
            logger.debug("Refreshing in-progress bulk build %s", self.state.bulk_build.id)
            await self._reconcile()
            if not self._should_poll():
                break
        if self._task is asyncio.current_task():
            self._task = None

    async def refresh_now(self) -> None:
        """Reconcile once, immediately, without touching the timer."""
        await self._reconcile()

    async def shutdown(self) -> None:
        """Stop polling and wait for the task to finish. Used on app shutdown."""
        self._unsubscribe()
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
