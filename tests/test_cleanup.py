"""Tests for StaleRunnerCleaner."""

import asyncio
from unittest.mock import MagicMock

import pytest

from agent_gateway.cleanup import StaleRunnerCleaner
from agent_gateway.registry import RunnerRegistry


class TestAbortStale:
    def test_aborts_only_old_runners(self):
        registry = RunnerRegistry()
        old_runner, fresh_runner = MagicMock(), MagicMock()
        registry.register("ws", "old", old_runner).started_at -= 1000
        registry.register("ws", "fresh", fresh_runner)

        cleaner = StaleRunnerCleaner(registry, max_age_seconds=600)

        assert cleaner.abort_stale() == 1
        old_runner.abort.assert_called_once()
        fresh_runner.abort.assert_not_called()

    def test_leaves_registry_entries_to_their_owner(self):
        registry = RunnerRegistry()
        registry.register("ws", "old", MagicMock()).started_at -= 1000

        StaleRunnerCleaner(registry, max_age_seconds=600).abort_stale()

        assert registry.is_busy("ws", "old")

    def test_abort_failure_does_not_stop_sweep(self):
        registry = RunnerRegistry()
        broken, healthy = MagicMock(), MagicMock()
        broken.abort.side_effect = RuntimeError("boom")
        registry.register("ws", "a", broken).started_at -= 1000
        registry.register("ws", "b", healthy).started_at -= 1000

        assert StaleRunnerCleaner(registry, max_age_seconds=600).abort_stale() == 2
        healthy.abort.assert_called_once()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_loop_runs_until_stopped(self):
        registry = RunnerRegistry()
        runner = MagicMock()
        registry.register("ws", "old", runner).started_at -= 1000
        cleaner = StaleRunnerCleaner(registry, max_age_seconds=600, interval_seconds=0.01)

        cleaner.start()
        await asyncio.sleep(0.05)
        await cleaner.stop()

        assert runner.abort.called
