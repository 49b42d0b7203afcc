"""Per-connection session protocol handler.

One SessionHandler lives for the lifetime of one client connection:

  unauthenticated --auth--> authenticated --chat_send/chat_retry--> runs

Chat flow for chat_send / chat_retry:
  1. rate limit check                     (rejection: chat_error rate_limited)
  2. registry admit + register, no await  (rejection: conversation_busy / global_limit)
  3. the run executes as its own task so approval responses keep flowing
  4. stream events are forwarded with the workspaceId/conversationId envelope
  5. release the registry slot, then send chat_complete or chat_error

On close every runner this connection started is aborted, its registry
entries are released and every pending approval it owns is cancelled.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from agent_gateway.approvals import (
    ApprovalError,
    ApprovalResult,
    ToolApprovalGate,
    ToolUseInfo,
    format_tool_for_display,
)
from agent_gateway.auth import InvalidTokenError, TokenVerifier
from agent_gateway.config import GatewaySettings
from agent_gateway.prompt import SKIPPED_FILES_REASON, build_prompt, select_context_files
from agent_gateway.rate_limit import RateLimiter
from agent_gateway.registry import AdmissionReason, RunnerKey, RunnerRegistry
from agent_gateway.runners.factory import RunnerBackend, create_runner
from agent_gateway.runners.models import DEFAULT_MODEL_ID, resolve_model_id
from agent_gateway.runners.ports import (
    AgentRunner,
    ApprovalHandler,
    PermissionMode,
    RunnerError,
    RunOptions,
)
from agent_gateway.schemas.protocol import (
    INBOUND_TYPES,
    AuthError,
    AuthMessage,
    AuthSuccess,
    ChatChunk,
    ChatComplete,
    ChatError,
    ChatRetryMessage,
    ChatSendMessage,
    ChatStart,
    ConversationCreated,
    DiffReady,
    ErrorMessage,
    FilesSkipped,
    ToolApprovalConfirmed,
    ToolApprovalRequest,
    ToolApprovalResponseMessage,
    ToolResult,
    ToolUse,
    WireModel,
    inbound_adapter,
)
from agent_gateway.schemas.streaming import RunResult, StreamEvent, StreamEventType
from agent_gateway.store import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    ConversationStore,
    DeviceRegistry,
    WorkspaceLookup,
    conversation_title,
    generate_id,
    retry_title,
)
from agent_gateway.truncate import Limits

logger = logging.getLogger(__name__)

RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please wait before sending more messages."
CONVERSATION_BUSY_MESSAGE = "This conversation is already processing a message. Please wait."
GLOBAL_LIMIT_MESSAGE = "Too many agents are running right now. Please try again shortly."
APPROVAL_NOT_FOUND_MESSAGE = "Tool approval not found or already processed"

_ADMISSION_MESSAGES = {
    AdmissionReason.CONVERSATION_BUSY: CONVERSATION_BUSY_MESSAGE,
    AdmissionReason.GLOBAL_LIMIT: GLOBAL_LIMIT_MESSAGE,
}

SendFn = Callable[[dict[str, Any]], Awaitable[None]]


class ChatRequestError(Exception):
    """A chat could not start because a prerequisite entity is missing."""


class ChatTimeoutError(Exception):
    """The agent run exceeded the configured wall-clock limit."""


@dataclass
class SessionPolicy:
    backend: RunnerBackend = "sdk"
    cli_path: str = "claude"
    default_model: str = DEFAULT_MODEL_ID
    permission_mode: PermissionMode = PermissionMode.BYPASS_PERMISSIONS
    max_turns: int = 20
    run_timeout_seconds: float = 600.0
    abort_grace_seconds: float = 10.0
    tool_approval_enabled: bool = False
    limits: Limits = field(default_factory=Limits)

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "SessionPolicy":
        return cls(
            backend=settings.runner_backend,
            cli_path=settings.claude_cli_path,
            default_model=settings.claude_model,
            permission_mode=PermissionMode(settings.claude_permission_mode),
            max_turns=settings.max_turns_chat,
            run_timeout_seconds=settings.runner_timeout_seconds,
            abort_grace_seconds=settings.runner_abort_grace_seconds,
            tool_approval_enabled=settings.tool_approval_enabled,
            limits=Limits(
                message_chars=settings.history_message_chars,
                history_count=settings.context_history_count,
                text_file_bytes=settings.text_file_max_bytes,
                attachment_bytes=settings.attachment_max_bytes,
                tool_result_chars=settings.tool_result_max_chars,
            ),
        )


@dataclass
class GatewayServices:
    """Process-wide collaborators shared by every connection."""

    verifier: TokenVerifier
    registry: RunnerRegistry
    rate_limiter: RateLimiter
    approvals: ToolApprovalGate
    conversations: ConversationStore
    workspaces: WorkspaceLookup
    devices: DeviceRegistry
    policy: SessionPolicy = field(default_factory=SessionPolicy)
    runner_factory: Callable[[], AgentRunner] | None = None

    def new_runner(self) -> AgentRunner:
        if self.runner_factory is not None:
            return self.runner_factory()
        return create_runner(self.policy.backend, cli_path=self.policy.cli_path)


@dataclass
class ChatRequest:
    workspace_id: str
    conversation_id: str
    message: str
    is_new: bool = False
    selected_files: list[str] = field(default_factory=list)
    model: str | None = None
    # Set when this run re-sends the last message of another conversation.
    retry_of: str | None = None


@dataclass
class _Transcript:
    text: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    tool_results: list[Any] = field(default_factory=list)


class SessionHandler:
    def __init__(self, services: GatewayServices, send: SendFn) -> None:
        self._services = services
        self._send_frame = send
        self.device_id: str | None = None
        self.device_name: str | None = None
        self._active: dict[RunnerKey, AgentRunner] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def is_authenticated(self) -> bool:
        return self.device_id is not None

    @property
    def tasks(self) -> frozenset[asyncio.Task]:
        return frozenset(self._tasks)

    async def send(self, event: WireModel) -> None:
        if self._closed:
            return
        await self._send_frame(event.to_wire())

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    async def handle_raw(self, raw: str | bytes) -> None:
        """Parse one inbound frame and dispatch it. Never raises for bad input."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            await self.send(ErrorMessage(error="Invalid JSON"))
            return

        message_type = data.get("type") if isinstance(data, dict) else None

        if message_type == "auth":
            try:
                auth = AuthMessage.model_validate(data)
            except ValidationError:
                self._reset_identity()
                await self.send(AuthError(error="Invalid token"))
                return
            await self._handle_auth(auth)
            return

        if not self.is_authenticated:
            await self.send(ErrorMessage(error="Not authenticated"))
            return

        if message_type not in INBOUND_TYPES:
            await self.send(ErrorMessage(error="Unknown message type"))
            return

        try:
            message = inbound_adapter.validate_python(data)
        except ValidationError as exc:
            await self.send(ErrorMessage(error=f"Invalid message: {_summarize_validation(exc)}"))
            return

        if isinstance(message, ChatSendMessage):
            await self._handle_chat_send(message)
        elif isinstance(message, ChatRetryMessage):
            await self._handle_chat_retry(message)
        elif isinstance(message, ToolApprovalResponseMessage):
            await self._handle_approval_response(message)

    async def _handle_auth(self, message: AuthMessage) -> None:
        try:
            payload = self._services.verifier.verify_token(message.token)
        except InvalidTokenError:
            self._reset_identity()
            await self.send(AuthError(error="Invalid token"))
            return

        if not await self._services.devices.device_exists(payload.device_id):
            logger.warning("Auth rejected: unknown device %s", payload.device_id)
            self._reset_identity()
            await self.send(AuthError(error="Device not found"))
            return

        self.device_id = payload.device_id
        self.device_name = payload.device_name
        logger.info("Device %s authenticated", payload.device_id)
        await self.send(AuthSuccess(device_id=payload.device_id))

    def _reset_identity(self) -> None:
        # A failed auth ends any earlier authentication on this connection.
        if self.device_id is not None:
            logger.info("Device %s lost authentication after a failed auth attempt", self.device_id)
        self.device_id = None
        self.device_name = None

    async def _handle_chat_send(self, message: ChatSendMessage) -> None:
        if not await self._check_rate_limit(message.workspace_id, message.conversation_id):
            return

        conversation_id = message.conversation_id or generate_id("conv")
        request = ChatRequest(
            workspace_id=message.workspace_id,
            conversation_id=conversation_id,
            message=message.message,
            is_new=message.conversation_id is None,
            selected_files=message.selected_files or [],
            model=message.model,
        )
        await self._admit_and_start(request)

    async def _handle_chat_retry(self, message: ChatRetryMessage) -> None:
        if not await self._check_rate_limit(None, message.conversation_id):
            return

        store = self._services.conversations
        original = await store.get_conversation(message.conversation_id)
        if original is None:
            await self.send(ChatError(conversation_id=message.conversation_id, error="Conversation not found"))
            return
        last = await store.get_last_user_message(original.id)
        if last is None:
            await self.send(ChatError(
                workspace_id=original.workspace_id,
                conversation_id=original.id,
                error="No messages to retry",
            ))
            return

        request = ChatRequest(
            workspace_id=original.workspace_id,
            conversation_id=generate_id("conv"),
            message=last.content,
            is_new=True,
            retry_of=original.id,
        )
        await self._admit_and_start(request)

    async def _handle_approval_response(self, message: ToolApprovalResponseMessage) -> None:
        gate = self._services.approvals
        pending = gate.get_pending(message.tool_id)
        # Only the device that was asked may answer.
        if pending is None or pending.device_id != self.device_id:
            await self.send(ErrorMessage(error=APPROVAL_NOT_FOUND_MESSAGE))
            return

        if message.approved:
            settled = gate.approve(message.tool_id, message.modified_input)
        else:
            settled = gate.reject(message.tool_id, message.reason)

        if settled:
            await self.send(ToolApprovalConfirmed(tool_id=message.tool_id, approved=message.approved))
        else:
            await self.send(ErrorMessage(error=APPROVAL_NOT_FOUND_MESSAGE))

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _check_rate_limit(self, workspace_id: str | None, conversation_id: str | None) -> bool:
        if self._services.rate_limiter.check_and_record(self.device_id):
            return True
        logger.info("Rate limit hit for device %s", self.device_id)
        await self.send(ChatError(
            workspace_id=workspace_id,
            conversation_id=conversation_id,
            error=RATE_LIMITED_MESSAGE,
            code="rate_limited",
        ))
        return False

    async def _admit_and_start(self, request: ChatRequest) -> None:
        registry = self._services.registry
        key = (request.workspace_id, request.conversation_id)

        # admit and register must not be separated by an await.
        admission = registry.admit(*key)
        if not admission.ok:
            logger.info(
                "Chat for %s/%s rejected: %s", request.workspace_id, request.conversation_id, admission.reason
            )
            await self.send(ChatError(
                workspace_id=request.workspace_id,
                conversation_id=request.conversation_id,
                error=_ADMISSION_MESSAGES[admission.reason],
                code=str(admission.reason),
            ))
            return
        runner = self._services.new_runner()
        registry.register(request.workspace_id, request.conversation_id, runner)
        self._active[key] = runner

        task = asyncio.create_task(self._run_chat(request, runner))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _run_chat(self, request: ChatRequest, runner: AgentRunner) -> None:
        key = (request.workspace_id, request.conversation_id)
        try:
            terminal = await self._execute(request, runner)
        except (ChatRequestError, ChatTimeoutError, RunnerError) as exc:
            logger.warning("Chat %s/%s failed: %s", *key, exc)
            terminal = ChatError(workspace_id=key[0], conversation_id=key[1], error=str(exc))
        except Exception as exc:
            logger.exception("Chat %s/%s failed unexpectedly", *key)
            terminal = ChatError(workspace_id=key[0], conversation_id=key[1], error=str(exc) or "Chat failed")
        finally:
            self._services.registry.release(*key)
            self._active.pop(key, None)
            self._services.approvals.cancel_for_conversation(request.conversation_id)

        await self.send(terminal)

    async def _execute(self, request: ChatRequest, runner: AgentRunner) -> ChatComplete:
        services = self._services
        policy = services.policy
        store = services.conversations

        if self._closed:
            raise ChatRequestError("Connection closed")
        workspace = await services.workspaces.get_workspace(request.workspace_id)
        if workspace is None:
            raise ChatRequestError("Workspace not found")

        conversation = await self._open_conversation(request)
        history = await store.get_history(conversation.id)
        await store.save_message(conversation.id, "user", request.message)
        if request.is_new and conversation.title == DEFAULT_CONVERSATION_TITLE:
            await store.update_conversation(conversation.id, title=conversation_title(request.message))

        await self.send(ChatStart(workspace_id=request.workspace_id, conversation_id=conversation.id))

        context = select_context_files(workspace.path, request.selected_files, policy.limits)
        if context.skipped:
            await self.send(FilesSkipped(
                workspace_id=request.workspace_id,
                conversation_id=conversation.id,
                files=context.skipped,
                reason=SKIPPED_FILES_REASON,
            ))

        prompt = build_prompt(
            request.message,
            context.included,
            history,
            has_session=bool(conversation.agent_session_id),
            limits=policy.limits,
        )
        options = RunOptions(
            workspace_path=workspace.path,
            system_prompt=workspace.system_prompt,
            max_turns=policy.max_turns,
            permission_mode=policy.permission_mode,
            resume_session_id=conversation.agent_session_id,
            model=resolve_model_id(request.model, policy.default_model),
            tool_result_max_chars=policy.limits.tool_result_chars,
        )
        if policy.tool_approval_enabled:
            options.permission_mode = PermissionMode.DEFAULT
            options.approval_handler = self._approval_handler(request)

        transcript = _Transcript()

        async def forward(event: StreamEvent) -> None:
            await self._forward(request, event, transcript)

        unsubscribe = runner.subscribe(forward)
        try:
            result = await self._run_with_timeout(runner, prompt, options)
        finally:
            unsubscribe()

        await self._persist(conversation, result, transcript)

        if result.modified_files:
            await self.send(DiffReady(
                workspace_id=request.workspace_id,
                conversation_id=conversation.id,
                files=result.modified_files,
            ))
        return ChatComplete.build(
            request.workspace_id, conversation.id, result.modified_files, result.token_usage
        )

    async def _open_conversation(self, request: ChatRequest) -> Conversation:
        store = self._services.conversations
        if not request.is_new:
            conversation = await store.get_conversation(request.conversation_id)
            if conversation is None or conversation.workspace_id != request.workspace_id:
                raise ChatRequestError("Conversation not found")
            return conversation

        title = retry_title(request.message) if request.retry_of else DEFAULT_CONVERSATION_TITLE
        conversation = await store.create_conversation(request.conversation_id, request.workspace_id, title)
        await self.send(ConversationCreated(
            workspace_id=request.workspace_id,
            conversation_id=conversation.id,
            is_retry=True if request.retry_of else None,
            original_conversation_id=request.retry_of,
        ))
        return conversation

    async def _run_with_timeout(self, runner: AgentRunner, prompt: str, options: RunOptions) -> RunResult:
        """Run the agent; once the timeout passes, abort it and wait for it to settle.

        The run is not cancelled on timeout: abort() lets the backend stop the
        agent gracefully and still emit its `done`. Only a run that ignores the
        abort for the grace period is cancelled.
        """
        timeout = self._services.policy.run_timeout_seconds
        run_task = asyncio.create_task(runner.run(prompt, options))
        try:
            done, _ = await asyncio.wait({run_task}, timeout=timeout)
        except asyncio.CancelledError:
            run_task.cancel()
            await asyncio.wait({run_task})
            raise
        if run_task in done:
            return run_task.result()

        logger.warning("Agent run exceeded %gs; aborting", timeout)
        runner.abort()
        await self._settle_aborted(run_task)
        raise ChatTimeoutError(f"Agent run timed out after {timeout:g}s")

    async def _settle_aborted(self, run_task: asyncio.Task) -> None:
        grace = self._services.policy.abort_grace_seconds
        try:
            done, _ = await asyncio.wait({run_task}, timeout=grace)
            if not done:
                logger.warning("Agent run ignored abort for %gs; cancelling it", grace)
                run_task.cancel()
                await asyncio.wait({run_task})
        except asyncio.CancelledError:
            run_task.cancel()
            raise
        if not run_task.cancelled() and run_task.exception() is not None:
            logger.info("Aborted run ended with: %s", run_task.exception())

    async def _forward(self, request: ChatRequest, event: StreamEvent, transcript: _Transcript) -> None:
        ws_id, conv_id = request.workspace_id, request.conversation_id
        if event.type == StreamEventType.TEXT:
            transcript.text += event.content or ""
            await self.send(ChatChunk(workspace_id=ws_id, conversation_id=conv_id, text=event.content or ""))
        elif event.type == StreamEventType.TOOL_USE:
            transcript.tool_calls.append({"name": event.tool_name, "input": event.tool_input})
            await self.send(ToolUse(
                workspace_id=ws_id, conversation_id=conv_id, tool=event.tool_name, input=event.tool_input
            ))
        elif event.type == StreamEventType.TOOL_RESULT:
            transcript.tool_results.append(event.tool_result)
            await self.send(ToolResult(workspace_id=ws_id, conversation_id=conv_id, result=event.tool_result))
        elif event.type == StreamEventType.ERROR:
            await self.send(ChatError(workspace_id=ws_id, conversation_id=conv_id, error=event.content or ""))
        # token_usage is reported once in chat_complete; done is implied by it.

    async def _persist(self, conversation: Conversation, result: RunResult, transcript: _Transcript) -> None:
        store = self._services.conversations
        try:
            await store.save_message(
                conversation.id,
                "assistant",
                transcript.text or result.full_text,
                tool_calls=transcript.tool_calls or None,
                tool_results=transcript.tool_results or None,
            )
            session_id = result.session_id if result.session_id != conversation.agent_session_id else None
            if session_id or result.token_usage:
                await store.update_conversation(
                    conversation.id, agent_session_id=session_id, token_usage=result.token_usage
                )
        except Exception:
            # The run itself succeeded; the client still gets chat_complete.
            logger.exception("Failed to persist result for conversation %s", conversation.id)

    def _approval_handler(self, request: ChatRequest) -> ApprovalHandler:
        gate = self._services.approvals
        # Bound at run start; the connection may re-authenticate meanwhile.
        device_id = self.device_id

        async def handle(tool_name: str, tool_input: dict[str, Any]) -> ApprovalResult:
            tool = ToolUseInfo(id=generate_id("tool"), name=tool_name, input=tool_input)
            decision = gate.request_approval(tool, request.conversation_id, device_id)
            if gate.is_pending(tool.id):
                display = format_tool_for_display(tool_name, tool_input)
                await self.send(ToolApprovalRequest(
                    tool_id=tool.id,
                    name=tool_name,
                    input=tool_input,
                    title=display.title,
                    description=display.description,
                    risk=str(display.risk),
                    workspace_id=request.workspace_id,
                    conversation_id=request.conversation_id,
                ))
            try:
                return await decision
            except ApprovalError as exc:
                # Nobody answered: the agent proceeds as if the tool was declined.
                logger.info("Tool %s (%s) not approved: %s", tool.id, tool_name, exc)
                return ApprovalResult(approved=False, reason=str(exc))

        return handle

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Abort every run of this connection and cancel its approvals."""
        if self._closed:
            return
        self._closed = True
        gate = self._services.approvals

        for (_, conversation_id), runner in list(self._active.items()):
            runner.abort()
            gate.cancel_for_conversation(conversation_id)
        if self.device_id is not None:
            gate.cancel_for_device(self.device_id)

        # Aborted runs wind down through their own cleanup; stragglers are cancelled.
        tasks = list(self._tasks)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._services.policy.abort_grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # Tasks cancelled before their first step never reach their cleanup.
        for key in list(self._active):
            self._services.registry.release(*key)
        self._active.clear()

        if self.device_id is not None:
            logger.info("Connection for device %s closed (%d run(s) stopped)", self.device_id, len(tasks))


def _summarize_validation(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)
