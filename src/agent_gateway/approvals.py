"""Human-in-the-loop approval gate for agent tool invocations.

Each tool invocation that is not auto-approved becomes a PendingApproval
bound to an asyncio Future. The future settles exactly once:

- approve()  -> resolves ApprovalResult(approved=True, modified_input)
- reject()   -> resolves ApprovalResult(approved=False, reason)
- timeout    -> raises ApprovalTimeoutError
- cancel_*() -> raises ApprovalCancelledError

After any of those the entry leaves the pending set, so a second decision on
the same tool id reports False. All state changes run on the event loop
thread; none of them await, so they cannot interleave.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

# Side-effect-free tools that skip the pending state entirely.
DEFAULT_READ_ONLY_TOOLS = frozenset({
    "Read",
    "Glob",
    "Grep",
    "LS",
    "View",
    "Search",
    "ListFiles",
    "GetFileTree",
})

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 120.0

# Display descriptions are cut to this many characters of the tool input.
_DESCRIPTION_MAX_CHARS = 100


class ApprovalError(Exception):
    """The approval never reached a human decision."""


class ApprovalTimeoutError(ApprovalError):
    pass


class ApprovalCancelledError(ApprovalError):
    pass


class Risk(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ApprovalResult:
    approved: bool
    modified_input: Any = None
    reason: str | None = None


@dataclass(frozen=True)
class ToolUseInfo:
    id: str
    name: str
    input: Any = None


@dataclass(frozen=True)
class ToolDisplay:
    title: str
    description: str
    risk: Risk


@dataclass
class PendingApproval:
    tool_id: str
    tool_name: str
    tool_input: Any
    device_id: str
    conversation_id: str
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle | None = None
    created_at: float = field(default_factory=time.time)


class ToolApprovalGate:
    """Owns every pending approval; callers only go through its methods."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        auto_approve_read_only: bool = True,
        read_only_tools: frozenset[str] | set[str] = DEFAULT_READ_ONLY_TOOLS,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._auto_approve_read_only = auto_approve_read_only
        self._read_only_tools = frozenset(read_only_tools)
        self._pending: dict[str, PendingApproval] = {}

    def is_auto_approved(self, tool_name: str) -> bool:
        return self._auto_approve_read_only and tool_name in self._read_only_tools

    def request_approval(
        self, tool: ToolUseInfo, conversation_id: str, device_id: str
    ) -> asyncio.Future:
        """Register a tool invocation and return a future for its decision.

        Read-only tools get an already-resolved future and never enter the
        pending set. Otherwise the entry is pending as soon as this returns,
        so callers can announce it before awaiting.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        if self.is_auto_approved(tool.name):
            future.set_result(ApprovalResult(approved=True))
            return future

        if tool.id in self._pending:
            raise ValueError(f"Tool {tool.id} is already awaiting approval")

        pending = PendingApproval(
            tool_id=tool.id,
            tool_name=tool.name,
            tool_input=tool.input,
            device_id=device_id,
            conversation_id=conversation_id,
            future=future,
        )
        pending.timeout_handle = loop.call_later(
            self._timeout_seconds, self._expire, tool.id
        )
        self._pending[tool.id] = pending
        # If the awaiting side gives up (task cancelled), drop the entry too.
        future.add_done_callback(lambda f, tool_id=tool.id: self._forget_cancelled(tool_id, f))
        logger.info(
            "Tool %s (%s) awaiting approval for conversation %s",
            tool.id, tool.name, conversation_id,
        )
        return future

    def approve(self, tool_id: str, modified_input: Any = None) -> bool:
        pending = self._take(tool_id)
        if pending is None:
            return False
        _settle(pending, result=ApprovalResult(approved=True, modified_input=modified_input))
        return True

    def reject(self, tool_id: str, reason: str | None = None) -> bool:
        pending = self._take(tool_id)
        if pending is None:
            return False
        _settle(pending, result=ApprovalResult(approved=False, reason=reason))
        return True

    def cancel_for_conversation(self, conversation_id: str) -> int:
        return self._cancel_where(
            lambda p: p.conversation_id == conversation_id, "Conversation cancelled"
        )

    def cancel_for_device(self, device_id: str) -> int:
        return self._cancel_where(lambda p: p.device_id == device_id, "Connection closed")

    def clear_all(self) -> int:
        return self._cancel_where(lambda p: True, "All approvals cleared")

    def get_pending(self, tool_id: str) -> PendingApproval | None:
        return self._pending.get(tool_id)

    def get_pending_for_device(self, device_id: str) -> list[PendingApproval]:
        return [p for p in self._pending.values() if p.device_id == device_id]

    def get_pending_for_conversation(self, conversation_id: str) -> list[PendingApproval]:
        return [p for p in self._pending.values() if p.conversation_id == conversation_id]

    def is_pending(self, tool_id: str) -> bool:
        return tool_id in self._pending

    @property
    def size(self) -> int:
        return len(self._pending)

    def _take(self, tool_id: str) -> PendingApproval | None:
        pending = self._pending.pop(tool_id, None)
        if pending is not None and pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        return pending

    def _expire(self, tool_id: str) -> None:
        pending = self._take(tool_id)
        if pending is None:
            return
        logger.warning("Tool approval timed out: %s (%s)", tool_id, pending.tool_name)
        _settle(pending, error=ApprovalTimeoutError(f"Tool approval timeout for {pending.tool_name}"))

    def _cancel_where(self, predicate, message: str) -> int:
        matched = [tool_id for tool_id, p in self._pending.items() if predicate(p)]
        for tool_id in matched:
            pending = self._take(tool_id)
            if pending is not None:
                _settle(pending, error=ApprovalCancelledError(message))
        if matched:
            logger.info("Cancelled %d pending approval(s): %s", len(matched), message)
        return len(matched)

    def _forget_cancelled(self, tool_id: str, future: asyncio.Future) -> None:
        if not future.cancelled():
            return
        pending = self._pending.get(tool_id)
        if pending is not None and pending.future is future:
            self._take(tool_id)


def _settle(
    pending: PendingApproval,
    result: ApprovalResult | None = None,
    error: ApprovalError | None = None,
) -> None:
    if pending.future.done():
        return
    if error is not None:
        pending.future.set_exception(error)
    else:
        pending.future.set_result(result)


def format_tool_for_display(
    tool_name: str, tool_input: Any, max_chars: int = _DESCRIPTION_MAX_CHARS
) -> ToolDisplay:
    """Build the title/description/risk shown on an approval prompt.

    Risk depends only on the tool name; the description is derived from the
    input and bounded to `max_chars` characters of it.
    """
    data = tool_input if isinstance(tool_input, dict) else {}

    if tool_name in ("Write", "Edit", "MultiEdit", "NotebookEdit"):
        target = data.get("file_path") or data.get("notebook_path") or data.get("path") or "unknown"
        return ToolDisplay(f"{tool_name} File", f"Modify: {target}", Risk.MEDIUM)

    if tool_name == "Bash":
        command = str(data.get("command") or "")
        return ToolDisplay("Execute Command", f"Run: {command[:max_chars]}", Risk.HIGH)

    if tool_name == "Delete":
        return ToolDisplay("Delete File", f"Delete: {data.get('path') or 'unknown'}", Risk.HIGH)

    if tool_name in ("Read", "Glob", "Grep"):
        target = data.get("file_path") or data.get("path") or data.get("pattern") or "files"
        return ToolDisplay(tool_name, str(target), Risk.LOW)

    try:
        preview = json.dumps(tool_input, default=str)
    except (TypeError, ValueError):
        preview = str(tool_input)
    return ToolDisplay(tool_name, preview[:max_chars], Risk.MEDIUM)
