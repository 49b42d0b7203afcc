"""Tests for RunnerRegistry admission and release."""

from unittest.mock import MagicMock

import pytest

from agent_gateway.registry import AdmissionReason, RegistryError, RunnerRegistry


class TestAdmission:
    def test_second_run_for_same_conversation_is_busy(self):
        registry = RunnerRegistry(max_concurrent=3)
        registry.register("ws", "conv-1", MagicMock())

        admission = registry.admit("ws", "conv-1")

        assert admission.ok is False
        assert admission.reason == AdmissionReason.CONVERSATION_BUSY

    def test_fourth_distinct_conversation_hits_global_limit(self):
        registry = RunnerRegistry(max_concurrent=3)
        for i in range(3):
            registry.register("ws", f"conv-{i}", MagicMock())

        admission = registry.admit("ws", "conv-new")

        assert admission.ok is False
        assert admission.reason == AdmissionReason.GLOBAL_LIMIT
        assert len(registry) == 3

    def test_busy_is_reported_before_global_limit(self):
        registry = RunnerRegistry(max_concurrent=1)
        registry.register("ws", "conv-1", MagicMock())

        assert registry.admit("ws", "conv-1").reason == AdmissionReason.CONVERSATION_BUSY

    def test_same_conversation_id_in_other_workspace_is_independent(self):
        registry = RunnerRegistry(max_concurrent=3)
        registry.register("ws-a", "conv-1", MagicMock())

        assert registry.admit("ws-b", "conv-1").ok is True

    def test_register_without_admission_raises(self):
        registry = RunnerRegistry(max_concurrent=1)
        registry.register("ws", "conv-1", MagicMock())

        with pytest.raises(RegistryError):
            registry.register("ws", "conv-2", MagicMock())
        with pytest.raises(RegistryError):
            registry.register("ws", "conv-1", MagicMock())


class TestRelease:
    def test_release_frees_the_slot(self):
        registry = RunnerRegistry(max_concurrent=1)
        registry.register("ws", "conv-1", MagicMock())

        assert registry.release("ws", "conv-1") is True

        assert registry.is_busy("ws", "conv-1") is False
        assert registry.admit("ws", "conv-2").ok is True

    def test_release_of_unknown_entry_is_tolerated(self):
        registry = RunnerRegistry()

        assert registry.release("ws", "nope") is False


class TestStale:
    def test_stale_lists_only_old_runners(self):
        registry = RunnerRegistry()
        old = registry.register("ws", "old", MagicMock())
        registry.register("ws", "fresh", MagicMock())
        old.started_at -= 1000

        stale = registry.stale(600)

        assert [s.conversation_id for s in stale] == ["old"]
