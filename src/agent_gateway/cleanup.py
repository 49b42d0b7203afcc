"""Background task that aborts runners stuck past the run timeout.

Every run already carries its own timeout, so this is a backstop: a runner
that is still registered long after it should have finished (a wedged
subprocess, a lost abort) is aborted here. The registry slot itself is
released by the owning session's cleanup path once the run settles.
"""

import asyncio
import logging

from agent_gateway.registry import RunnerRegistry

logger = logging.getLogger(__name__)


class StaleRunnerCleaner:
    """Periodically aborts registered runners older than the max age."""

    def __init__(
        self,
        registry: RunnerRegistry,
        max_age_seconds: float,
        interval_seconds: float = 60.0,
    ):
        self._registry = registry
        self._max_age_seconds = max_age_seconds
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "Stale runner cleaner started (max age=%ss, every %ss)",
            self._max_age_seconds, self._interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            self.abort_stale()

    def abort_stale(self) -> int:
        """Abort every runner past the max age; returns how many were aborted."""
        stale = self._registry.stale(self._max_age_seconds)
        for state in stale:
            logger.warning(
                "Aborting stale runner for %s/%s (running %.0fs)",
                state.workspace_id, state.conversation_id, state.age(),
            )
            try:
                state.runner.abort()
            except Exception:
                logger.exception("Failed to abort runner for %s/%s", *state.key)
        return len(stale)
