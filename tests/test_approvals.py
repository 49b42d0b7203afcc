"""Tests for ToolApprovalGate state transitions and display formatting."""

import asyncio

import pytest

from agent_gateway.approvals import (
    ApprovalCancelledError,
    ApprovalResult,
    ApprovalTimeoutError,
    Risk,
    ToolApprovalGate,
    ToolUseInfo,
    format_tool_for_display,
)


def _bash(tool_id: str = "tool-1") -> ToolUseInfo:
    return ToolUseInfo(id=tool_id, name="Bash", input={"command": "rm -rf build"})


class TestAutoApproval:
    @pytest.mark.asyncio
    async def test_read_only_tool_resolves_immediately(self):
        gate = ToolApprovalGate()

        future = gate.request_approval(ToolUseInfo("t1", "Read", {"file_path": "a.py"}), "conv-1", "dev-1")

        assert future.done()
        assert (await future).approved is True
        assert gate.get_pending_for_conversation("conv-1") == []
        assert gate.is_pending("t1") is False
        assert gate.size == 0

    @pytest.mark.asyncio
    async def test_auto_approval_can_be_disabled(self):
        gate = ToolApprovalGate(auto_approve_read_only=False)

        future = gate.request_approval(ToolUseInfo("t1", "Read", {}), "conv-1", "dev-1")

        assert not future.done()
        assert gate.is_pending("t1")
        gate.clear_all()


class TestDecisions:
    @pytest.mark.asyncio
    async def test_approve_resolves_with_modified_input(self):
        gate = ToolApprovalGate()
        future = gate.request_approval(_bash(), "conv-1", "dev-1")

        assert gate.approve("tool-1", {"command": "ls"}) is True

        assert await future == ApprovalResult(approved=True, modified_input={"command": "ls"})
        assert gate.is_pending("tool-1") is False

    @pytest.mark.asyncio
    async def test_reject_resolves_not_raises(self):
        gate = ToolApprovalGate()
        future = gate.request_approval(_bash(), "conv-1", "dev-1")

        assert gate.reject("tool-1", "too risky") is True

        result = await future
        assert result.approved is False
        assert result.reason == "too risky"

    @pytest.mark.asyncio
    async def test_second_decision_reports_false(self):
        gate = ToolApprovalGate()
        gate.request_approval(_bash(), "conv-1", "dev-1")
        gate.approve("tool-1")

        assert gate.approve("tool-1") is False
        assert gate.reject("tool-1") is False

    def test_unknown_tool_reports_false(self):
        gate = ToolApprovalGate()

        assert gate.approve("missing") is False
        assert gate.reject("missing") is False

    @pytest.mark.asyncio
    async def test_duplicate_tool_id_is_refused(self):
        gate = ToolApprovalGate()
        gate.request_approval(_bash(), "conv-1", "dev-1")

        with pytest.raises(ValueError):
            gate.request_approval(_bash(), "conv-1", "dev-1")
        gate.clear_all()


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_rejects_and_removes_entry(self):
        gate = ToolApprovalGate(timeout_seconds=0.01)
        future = gate.request_approval(_bash(), "conv-1", "dev-1")

        with pytest.raises(ApprovalTimeoutError, match="Tool approval timeout"):
            await future

        assert gate.is_pending("tool-1") is False
        assert gate.approve("tool-1") is False
        assert gate.reject("tool-1") is False

    @pytest.mark.asyncio
    async def test_approval_cancels_the_timer(self):
        gate = ToolApprovalGate(timeout_seconds=0.05)
        future = gate.request_approval(_bash(), "conv-1", "dev-1")
        gate.approve("tool-1")

        await asyncio.sleep(0.1)

        assert (await future).approved is True


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_for_conversation_only_hits_that_conversation(self):
        gate = ToolApprovalGate()
        a1 = gate.request_approval(_bash("a1"), "conv-a", "dev-1")
        a2 = gate.request_approval(_bash("a2"), "conv-a", "dev-1")
        b1 = gate.request_approval(_bash("b1"), "conv-b", "dev-1")

        assert gate.cancel_for_conversation("conv-a") == 2

        for future in (a1, a2):
            with pytest.raises(ApprovalCancelledError, match="Conversation cancelled"):
                await future
        assert not b1.done()
        assert [p.tool_id for p in gate.get_pending_for_conversation("conv-b")] == ["b1"]
        gate.clear_all()

    @pytest.mark.asyncio
    async def test_cancel_for_device(self):
        gate = ToolApprovalGate()
        mine = gate.request_approval(_bash("m"), "conv-a", "dev-1")
        gate.request_approval(_bash("o"), "conv-b", "dev-2")

        assert gate.cancel_for_device("dev-1") == 1

        with pytest.raises(ApprovalCancelledError, match="Connection closed"):
            await mine
        assert [p.tool_id for p in gate.get_pending_for_device("dev-2")] == ["o"]
        gate.clear_all()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_drops_its_entry(self):
        gate = ToolApprovalGate()
        future = gate.request_approval(_bash(), "conv-1", "dev-1")

        future.cancel()
        await asyncio.sleep(0)

        assert gate.size == 0


class TestFormatToolForDisplay:
    def test_write_is_medium_risk(self):
        display = format_tool_for_display("Write", {"file_path": "src/app.py"})

        assert display.title == "Write File"
        assert display.description == "Modify: src/app.py"
        assert display.risk == Risk.MEDIUM

    def test_bash_is_high_risk_and_truncated(self):
        display = format_tool_for_display("Bash", {"command": "x" * 500})

        assert display.risk == Risk.HIGH
        assert display.description == "Run: " + "x" * 100

    def test_read_tools_are_low_risk(self):
        assert format_tool_for_display("Grep", {"pattern": "TODO"}).risk == Risk.LOW

    def test_unknown_tool_gets_json_preview(self):
        display = format_tool_for_display("WebFetch", {"url": "https://example.com"})

        assert display.risk == Risk.MEDIUM
        assert display.description == '{"url": "https://example.com"}'
