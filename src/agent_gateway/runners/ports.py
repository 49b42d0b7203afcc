"""Ports (interfaces) for agent runner backends.

The session layer depends on these contracts, never on a concrete backend:
a runner executes exactly one agent turn, pushes normalized StreamEvents to
its subscribers while it works, and returns a RunResult.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from agent_gateway.approvals import ApprovalResult
from agent_gateway.schemas.streaming import RunResult, StreamEvent

logger = logging.getLogger(__name__)

# Tools whose structured input names a file the agent writes to.
FILE_WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})

DEFAULT_MAX_TURNS = 20
DEFAULT_TOOL_RESULT_MAX_CHARS = 2000


class PermissionMode(StrEnum):
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"


EventListener = Callable[[StreamEvent], Awaitable[None] | None]

# Called for every tool invocation that needs a decision; returns how to proceed.
ApprovalHandler = Callable[[str, dict[str, Any]], Awaitable[ApprovalResult]]


@dataclass
class RunOptions:
    workspace_path: str
    system_prompt: str | None = None
    max_turns: int = DEFAULT_MAX_TURNS
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    resume_session_id: str | None = None
    model: str | None = None
    approval_handler: ApprovalHandler | None = None
    tool_result_max_chars: int = DEFAULT_TOOL_RESULT_MAX_CHARS


class RunnerError(Exception):
    """Base class for agent run failures."""


class RunnerStartError(RunnerError):
    """The agent process or session never started. No `done` was emitted."""


class RunnerExitError(RunnerError):
    """The agent started but ended abnormally. Raised after `done`."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class RunnerAbortedError(RunnerExitError):
    """The run ended because abort() was requested."""


class EventChannel:
    """Ordered fan-out of StreamEvents to subscribed listeners.

    Listeners may be plain callables or coroutine functions; each emitted
    event is delivered to every listener before the next one is emitted, so
    subscribers observe events in production order.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def emit(self, event: StreamEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                # Listener failures are logged; the run continues.
                logger.exception("Stream listener failed on %s event", event.type)


@runtime_checkable
class AgentRunner(Protocol):
    """One agent turn against one workspace."""

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        ...

    async def run(self, prompt: str, options: RunOptions) -> RunResult:
        ...

    def abort(self) -> None:
        ...


def modified_path(tool_name: str, tool_input: Any) -> str | None:
    """Return the target path of a write/edit-class tool call, if any."""
    if tool_name not in FILE_WRITE_TOOLS or not isinstance(tool_input, dict):
        return None
    path = tool_input.get("file_path") or tool_input.get("notebook_path") or tool_input.get("path")
    return path if isinstance(path, str) and path else None


def flatten_tool_content(content: Any) -> str:
    """Tool result content is either a string or a list of text parts."""
    if isinstance(content, list):
        parts = [
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        return " ".join(parts)
    return "" if content is None else str(content)
