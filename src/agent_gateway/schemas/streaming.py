"""Normalized streaming event types emitted by every agent backend.

Both runner backends translate their native output (CLI stream-json lines or
Agent SDK message objects) into this closed set of events. The session layer
only ever sees these types, never backend-specific payloads.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class StreamEventType(StrEnum):
    """Event types emitted during one agent run."""

    # Incremental assistant text.
    TEXT = "text"

    # The agent invoked a tool (name and fully formed input known).
    TOOL_USE = "tool_use"

    # A tool finished and its output is available.
    TOOL_RESULT = "tool_result"

    # Cumulative token usage for the run so far.
    TOKEN_USAGE = "token_usage"

    # A non-terminal error surfaced by the agent or its process.
    ERROR = "error"

    # Terminal marker; exactly one per started run, always last.
    DONE = "done"


class TokenUsage(BaseModel):
    """Token counts and cost for one run. All values are non-negative."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    cache_creation_tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0)

    def to_wire(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "costUsd": self.cost_usd,
        }


class StreamEvent(BaseModel):
    """A single normalized event in a run's stream.

    The `type` field determines which data fields are populated:
    - text: content
    - tool_use: tool_name, tool_input, tool_use_id (when the backend knows it)
    - tool_result: tool_result
    - token_usage: token_usage
    - error: content
    - done: nothing
    """

    type: StreamEventType
    content: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    tool_use_id: str | None = None
    tool_result: Any = None
    token_usage: TokenUsage | None = None

    @classmethod
    def text(cls, content: str) -> "StreamEvent":
        return cls(type=StreamEventType.TEXT, content=content)

    @classmethod
    def tool_use(
        cls, tool_name: str, tool_input: Any, tool_use_id: str | None = None
    ) -> "StreamEvent":
        return cls(
            type=StreamEventType.TOOL_USE,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_use_id=tool_use_id,
        )

    @classmethod
    def result(cls, tool_result: Any) -> "StreamEvent":
        return cls(type=StreamEventType.TOOL_RESULT, tool_result=tool_result)

    @classmethod
    def usage(cls, token_usage: TokenUsage) -> "StreamEvent":
        # Snapshot so later accumulation never mutates an emitted event.
        return cls(type=StreamEventType.TOKEN_USAGE, token_usage=token_usage.model_copy())

    @classmethod
    def error(cls, content: str) -> "StreamEvent":
        return cls(type=StreamEventType.ERROR, content=content)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(type=StreamEventType.DONE)


class RunResult(BaseModel):
    """Final outcome of a successful run."""

    full_text: str = ""
    # Deduplicated; order carries no meaning.
    modified_files: list[str] = Field(default_factory=list)
    token_usage: TokenUsage | None = None
    session_id: str | None = None
