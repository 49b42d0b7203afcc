"""Claude Code CLI backend.

Claude Code is spawned once per run via asyncio subprocess:

  claude -p <prompt> --output-format stream-json --verbose --max-turns N

with the workspace as its working directory. Its stdout carries one JSON
object per line; each line is normalized into StreamEvents as it arrives.
Lines that are not JSON objects (startup banners, partial writes), lines
longer than the stream limit, and message types we don't recognize are
skipped.

Exit handling:
- spawn failure          -> RunnerStartError, no `done` event;
- non-zero exit / abort  -> `done`, then RunnerExitError / RunnerAbortedError;
- unreadable output      -> process killed, `done`, then RunnerExitError;
- exit code 0            -> `done`, then RunResult.
"""

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncIterator, Callable
from typing import Any

from agent_gateway.runners.ports import (
    EventChannel,
    EventListener,
    PermissionMode,
    RunnerAbortedError,
    RunnerExitError,
    RunnerStartError,
    RunOptions,
    flatten_tool_content,
    modified_path,
)
from agent_gateway.runners.usage import (
    ModelPricing,
    add_usage,
    pricing_for,
    replace_usage,
    usage_from_report,
)
from agent_gateway.schemas.streaming import RunResult, StreamEvent, TokenUsage
from agent_gateway.truncate import truncate_text

logger = logging.getLogger(__name__)

_CLAUDE_BINARY = "claude"

# Flag that allows Claude Code to execute tools without prompting.
_SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"

# stderr lines containing these are build-tool chatter, not agent errors.
_STDERR_NOISE = ("Compiling", "Watching")

# A single stream-json line can hold a whole file read; the asyncio default
# of 64 KiB per line is far too small.
_STREAM_LIMIT_BYTES = 10 * 1024 * 1024

# `system` messages announcing a file write, e.g. "Wrote src/index.ts".
_FILE_WRITE_MESSAGE = re.compile(r"(?:Wrote|Created)\s+(.+)")


async def _read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines, dropping any line longer than the stream limit.

    Plain `async for` over a StreamReader raises ValueError on such a line and
    abandons the rest of the output.
    """
    oversized = False
    while True:
        try:
            line = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            # EOF; whatever is left had no trailing newline.
            if exc.partial and not oversized:
                yield exc.partial
            return
        except asyncio.LimitOverrunError as exc:
            if not oversized:
                logger.warning("Skipping oversized Claude CLI output line")
            oversized = True
            await stream.readexactly(exc.consumed)
            continue
        if oversized:
            # Tail of the line that was dropped.
            oversized = False
            continue
        yield line


class ClaudeCliRunner:
    """Runs one Claude Code CLI invocation and streams normalized events."""

    def __init__(self, cli_path: str = _CLAUDE_BINARY) -> None:
        self._cli_path = cli_path or _CLAUDE_BINARY
        self._events = EventChannel()
        self._process: asyncio.subprocess.Process | None = None
        self._started = False
        self._finished = False
        self._aborted = False

        self._full_text = ""
        self._modified_files: dict[str, None] = {}
        self._usage = TokenUsage()
        self._usage_reported = False
        self._session_id: str | None = None
        self._pricing: ModelPricing = pricing_for(None)
        self._tool_result_max_chars = 0

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        return self._events.subscribe(listener)

    def build_command(self, prompt: str, options: RunOptions) -> list[str]:
        cmd = [
            self._cli_path,
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",  # Required for stream-json output.
            "--max-turns", str(options.max_turns),
        ]

        if options.permission_mode == PermissionMode.BYPASS_PERMISSIONS:
            cmd.append(_SKIP_PERMISSIONS_FLAG)
        elif options.permission_mode == PermissionMode.ACCEPT_EDITS:
            cmd.extend(["--permission-mode", "acceptEdits"])

        if options.system_prompt:
            cmd.extend(["--system-prompt", options.system_prompt])
        if options.model:
            cmd.extend(["--model", options.model])
        if options.resume_session_id:
            cmd.extend(["--resume", options.resume_session_id])
        return cmd

    async def run(self, prompt: str, options: RunOptions) -> RunResult:
        if self._started:
            raise RuntimeError("ClaudeCliRunner runs exactly once; create a new runner")
        self._started = True
        self._pricing = pricing_for(options.model)
        self._tool_result_max_chars = options.tool_result_max_chars

        if options.approval_handler is not None:
            # The CLI has no in-process permission callback to hook into.
            logger.warning("Claude CLI backend cannot pause for tool approval; running without it")

        cmd = self.build_command(prompt, options)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=options.workspace_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "NO_COLOR": "1"},
                limit=_STREAM_LIMIT_BYTES,
            )
        except OSError as exc:
            self._finished = True
            raise RunnerStartError(f"Failed to spawn Claude CLI: {exc}") from exc

        self._process = process
        logger.info("Claude CLI started (pid %s) in %s", process.pid, options.workspace_path)
        if self._aborted:
            # abort() arrived while the process was being spawned.
            self._terminate()

        stderr_task = asyncio.create_task(self._read_stderr(process.stderr))
        returncode: int | None = None
        failure: Exception | None = None
        try:
            async for raw_line in _read_lines(process.stdout):
                await self._handle_line(raw_line)
            await stderr_task
            returncode = await process.wait()
        except Exception as exc:
            logger.exception("Failed reading Claude CLI output")
            failure = exc
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            if process.returncode is None:
                # Cancelled or failed mid-stream: don't leave the agent running.
                process.kill()
            self._finished = True

        await self._events.emit(StreamEvent.done())

        if self._aborted:
            raise RunnerAbortedError("Claude CLI run aborted", returncode)
        if failure is not None:
            raise RunnerExitError(
                f"Failed reading Claude CLI output: {failure}", process.returncode
            ) from failure
        if returncode != 0:
            logger.error("Claude CLI exited with code %s", returncode)
            raise RunnerExitError(f"Claude CLI exited with code {returncode}", returncode)

        return RunResult(
            full_text=self._full_text,
            modified_files=list(self._modified_files),
            token_usage=self._usage if self._usage_reported else None,
            session_id=self._session_id,
        )

    def abort(self) -> None:
        """Ask the CLI to terminate. No-op once the run has finished."""
        if self._finished or self._aborted:
            return
        self._aborted = True
        logger.info("Aborting Claude CLI run")
        self._terminate()

    def _terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            # Exited between the returncode check and the signal.
            logger.debug("Claude CLI already exited before SIGTERM")

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        async for raw_line in _read_lines(stream):
            content = raw_line.decode("utf-8", errors="replace").strip()
            if not content or any(noise in content for noise in _STDERR_NOISE):
                continue
            await self._events.emit(StreamEvent.error(content))

    async def _handle_line(self, raw_line: bytes) -> None:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON CLI output: %s", line[:200])
            return
        if not isinstance(event, dict):
            return

        session_id = event.get("session_id")
        if isinstance(session_id, str) and session_id:
            self._session_id = session_id

        event_type = event.get("type")
        if event_type in ("assistant", "content_block_delta"):
            await self._handle_assistant(event)
        elif event_type == "stream_event":
            await self._handle_assistant(event.get("event") or {})
        elif event_type == "user":
            await self._handle_tool_results(event)
        elif event_type == "usage":
            await self._handle_usage(event)
        elif event_type == "result":
            await self._handle_result(event)
        elif event_type == "system":
            self._handle_system(event)

    async def _handle_assistant(self, event: dict[str, Any]) -> None:
        message = event.get("message")
        blocks = message.get("content") if isinstance(message, dict) else None
        for block in blocks if isinstance(blocks, list) else []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                await self._append_text(block["text"])
            elif block.get("type") == "tool_use":
                name = str(block.get("name") or "unknown")
                tool_input = block.get("input")
                path = modified_path(name, tool_input)
                if path:
                    self._modified_files[path] = None
                await self._events.emit(StreamEvent.tool_use(name, tool_input, block.get("id")))

        # Partial-message streaming puts text in a delta instead.
        delta = event.get("delta")
        if isinstance(delta, dict) and delta.get("type") == "text_delta" and delta.get("text"):
            await self._append_text(delta["text"])

    async def _handle_tool_results(self, event: dict[str, Any]) -> None:
        message = event.get("message")
        blocks = message.get("content") if isinstance(message, dict) else None
        for block in blocks if isinstance(blocks, list) else []:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            await self._events.emit(StreamEvent.result({
                "toolUseId": block.get("tool_use_id"),
                "content": self._truncate_result(flatten_tool_content(block.get("content"))),
                "isError": bool(block.get("is_error", False)),
            }))

    async def _handle_usage(self, event: dict[str, Any]) -> None:
        report = event.get("usage")
        if not isinstance(report, dict):
            return
        self._usage = add_usage(self._usage, usage_from_report(report), self._pricing)
        self._usage_reported = True
        await self._events.emit(StreamEvent.usage(self._usage))

    async def _handle_result(self, event: dict[str, Any]) -> None:
        report = event.get("usage")
        if isinstance(report, dict):
            cost = event.get("total_cost_usd")
            self._usage = replace_usage(
                self._usage,
                usage_from_report(report),
                float(cost) if isinstance(cost, (int, float)) else None,
                self._pricing,
            )
            self._usage_reported = True
            await self._events.emit(StreamEvent.usage(self._usage))

        # Non-streaming runs only report their text here.
        result_text = event.get("result")
        if isinstance(result_text, str) and result_text and not self._full_text:
            self._full_text = result_text

        if event.get("is_error") and event.get("subtype") != "success":
            await self._events.emit(StreamEvent.error(f"Run ended with: {event.get('subtype')}"))

    def _handle_system(self, event: dict[str, Any]) -> None:
        message = event.get("message")
        if not isinstance(message, str):
            return
        match = _FILE_WRITE_MESSAGE.search(message)
        if match:
            self._modified_files[match.group(1).strip()] = None

    async def _append_text(self, text: str) -> None:
        self._full_text += text
        await self._events.emit(StreamEvent.text(text))

    def _truncate_result(self, content: str) -> str:
        if self._tool_result_max_chars <= 0:
            return content
        return truncate_text(content, self._tool_result_max_chars)
