"""Claude Agent SDK backend.

Runs one agent turn in-process through claude_agent_sdk.query() and
translates SDK messages into StreamEvents:

- StreamEvent text deltas      -> text (partial messages are enabled)
- AssistantMessage TextBlock   -> text, only when no deltas were seen for it
- AssistantMessage ToolUseBlock -> tool_use
- UserMessage ToolResultBlock  -> tool_result
- ResultMessage                -> token_usage (cumulative, last report wins)

Unlike the CLI backend this one can pause for human approval: when the
run options carry an approval handler it is wired into the SDK's
can_use_tool callback.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    CLIConnectionError,
    PermissionResultAllow,
    PermissionResultDeny,
    ProcessError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)
from claude_agent_sdk.types import StreamEvent as SDKStreamEvent

from agent_gateway.runners.ports import (
    ApprovalHandler,
    EventChannel,
    EventListener,
    RunnerAbortedError,
    RunnerExitError,
    RunnerStartError,
    RunOptions,
    flatten_tool_content,
    modified_path,
)
from agent_gateway.runners.usage import ModelPricing, pricing_for, replace_usage, usage_from_report
from agent_gateway.schemas.streaming import RunResult, StreamEvent, TokenUsage
from agent_gateway.truncate import truncate_text

logger = logging.getLogger(__name__)

_REJECTED_BY_USER = "Tool use rejected by user"

_PermissionResult = PermissionResultAllow | PermissionResultDeny


async def _single_prompt(prompt: str) -> AsyncIterator[dict[str, Any]]:
    """can_use_tool requires streaming input, so the prompt goes in as one message."""
    yield {
        "type": "user",
        "message": {"role": "user", "content": prompt},
        "parent_tool_use_id": None,
        "session_id": "default",
    }


class ClaudeSDKRunner:
    """Runs one Agent SDK query and streams normalized events.

    The query executes in an inner task so abort() can cancel it from
    anywhere on the loop.
    """

    def __init__(self, cli_path: str | None = None) -> None:
        # The SDK finds its bundled CLI on its own; only override when configured.
        self._cli_path = cli_path
        self._events = EventChannel()
        self._task: asyncio.Task | None = None
        self._started = False
        self._finished = False
        self._aborted = False
        self._emitted_any = False

        self._full_text = ""
        self._modified_files: dict[str, None] = {}
        self._usage: TokenUsage | None = None
        self._session_id: str | None = None
        self._streamed_text = False
        self._tool_result_max_chars = 0

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        return self._events.subscribe(listener)

    async def run(self, prompt: str, options: RunOptions) -> RunResult:
        if self._started:
            raise RuntimeError("ClaudeSDKRunner runs exactly once; create a new runner")
        self._started = True
        if self._aborted:
            self._finished = True
            raise RunnerAbortedError("Claude Agent SDK run aborted before start")

        self._tool_result_max_chars = options.tool_result_max_chars
        self._task = asyncio.create_task(self._execute(prompt, options))
        try:
            return await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not self._aborted or (current is not None and current.cancelling()):
                raise
            # Aborted before the inner task got to run at all.
            await self._emit(StreamEvent.done())
            raise RunnerAbortedError("Claude Agent SDK run aborted") from None
        finally:
            self._finished = True

    def abort(self) -> None:
        """Cancel the in-flight query. No-op once the run has finished."""
        if self._finished or self._aborted:
            return
        self._aborted = True
        logger.info("Aborting Claude Agent SDK run")
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _execute(self, prompt: str, options: RunOptions) -> RunResult:
        try:
            try:
                await self._stream(prompt, options, options.resume_session_id)
            except ProcessError as exc:
                # An expired or corrupted session fails the resume; retry once
                # fresh, but only if nothing reached subscribers yet.
                if not options.resume_session_id or self._emitted_any:
                    raise
                logger.warning(
                    "Resume of session %s failed: %s; retrying without resume",
                    options.resume_session_id, exc,
                )
                await self._stream(prompt, options, None)
        except asyncio.CancelledError:
            if not self._aborted:
                raise
            await self._emit(StreamEvent.done())
            raise RunnerAbortedError("Claude Agent SDK run aborted") from None
        except CLIConnectionError as exc:
            # Includes CLINotFoundError.
            if not self._emitted_any:
                raise RunnerStartError(f"Failed to start Claude Agent SDK: {exc}") from exc
            await self._emit(StreamEvent.done())
            raise RunnerExitError(f"Claude Agent SDK connection lost: {exc}") from exc
        except Exception as exc:
            logger.exception("Claude Agent SDK query failed")
            await self._emit(StreamEvent.done())
            raise RunnerExitError(str(exc), getattr(exc, "exit_code", None)) from exc

        await self._emit(StreamEvent.done())
        return RunResult(
            full_text=self._full_text,
            modified_files=list(self._modified_files),
            token_usage=self._usage,
            session_id=self._session_id,
        )

    def _build_options(self, options: RunOptions, resume: str | None) -> ClaudeAgentOptions:
        handler = options.approval_handler
        return ClaudeAgentOptions(
            cwd=options.workspace_path,
            system_prompt=options.system_prompt,
            max_turns=options.max_turns,
            permission_mode=str(options.permission_mode),
            model=options.model,
            resume=resume,
            cli_path=self._cli_path,
            include_partial_messages=True,
            can_use_tool=_permission_callback(handler) if handler is not None else None,
        )

    async def _stream(self, prompt: str, options: RunOptions, resume: str | None) -> None:
        sdk_options = self._build_options(options, resume)
        prompt_input: Any = prompt
        if options.approval_handler is not None:
            prompt_input = _single_prompt(prompt)

        pricing = pricing_for(options.model)
        async for message in query(prompt=prompt_input, options=sdk_options):
            if isinstance(message, SDKStreamEvent):
                await self._handle_stream_event(message)
            elif isinstance(message, AssistantMessage):
                await self._handle_assistant(message)
            elif isinstance(message, UserMessage):
                await self._handle_user(message)
            elif isinstance(message, ResultMessage):
                await self._handle_result(message, pricing)
            elif isinstance(message, SystemMessage):
                data = getattr(message, "data", None) or {}
                if isinstance(data, dict) and data.get("session_id"):
                    self._session_id = data["session_id"]

    async def _handle_stream_event(self, message: Any) -> None:
        if getattr(message, "session_id", None):
            self._session_id = message.session_id
        event = message.event or {}
        if event.get("type") != "content_block_delta":
            return
        delta = event.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            self._streamed_text = True
            await self._append_text(delta["text"])

    async def _handle_assistant(self, message: Any) -> None:
        for block in message.content:
            if isinstance(block, TextBlock):
                # Already delivered piecewise through deltas.
                if not self._streamed_text and block.text:
                    await self._append_text(block.text)
            elif isinstance(block, ToolUseBlock):
                path = modified_path(block.name, block.input)
                if path:
                    self._modified_files[path] = None
                await self._emit(StreamEvent.tool_use(block.name, block.input, block.id))
        self._streamed_text = False

    async def _handle_user(self, message: Any) -> None:
        if not isinstance(message.content, list):
            return
        for block in message.content:
            if not isinstance(block, ToolResultBlock):
                continue
            content = flatten_tool_content(block.content)
            if self._tool_result_max_chars > 0:
                content = truncate_text(content, self._tool_result_max_chars)
            await self._emit(StreamEvent.result({
                "toolUseId": block.tool_use_id,
                "content": content,
                "isError": bool(block.is_error),
            }))

    async def _handle_result(self, message: Any, pricing: ModelPricing) -> None:
        if message.session_id:
            self._session_id = message.session_id
        if isinstance(message.usage, dict):
            self._usage = replace_usage(
                self._usage or TokenUsage(),
                usage_from_report(message.usage),
                message.total_cost_usd,
                pricing,
            )
            await self._emit(StreamEvent.usage(self._usage))

        result_text = getattr(message, "result", None)
        if isinstance(result_text, str) and result_text and not self._full_text:
            self._full_text = result_text

        if message.is_error or message.subtype != "success":
            await self._emit(StreamEvent.error(f"Query ended with: {message.subtype}"))

    async def _append_text(self, text: str) -> None:
        self._full_text += text
        await self._emit(StreamEvent.text(text))

    async def _emit(self, event: StreamEvent) -> None:
        self._emitted_any = True
        await self._events.emit(event)


def _permission_callback(
    handler: ApprovalHandler,
) -> Callable[[str, dict[str, Any], Any], Awaitable[_PermissionResult]]:
    async def can_use_tool(tool_name: str, tool_input: dict[str, Any], context: Any) -> _PermissionResult:
        decision = await handler(tool_name, tool_input)
        if decision.approved:
            updated = decision.modified_input if isinstance(decision.modified_input, dict) else tool_input
            return PermissionResultAllow(updated_input=updated)
        return PermissionResultDeny(message=decision.reason or _REJECTED_BY_USER)

    return can_use_tool
