"""Wire protocol between the gateway and its clients.

Every frame is a JSON object with a `type` discriminator and camelCase keys.

Client -> Server:
  {"type": "auth", "token": "..."}
  {"type": "chat_send", "workspaceId": "...", "conversationId"?: "...",
   "message": "...", "selectedFiles"?: [...], "model"?: "..."}
  {"type": "chat_retry", "conversationId": "..."}
  {"type": "tool_approval_response", "toolId": "...", "approved": true,
   "modifiedInput"?: {...}, "reason"?: "..."}

Server -> Client frames are the Outbound* models below. Conversation-scoped
frames carry both workspaceId and conversationId so a client running several
conversations at once can demultiplex them.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from agent_gateway.schemas.streaming import TokenUsage


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


class AuthMessage(WireModel):
    type: Literal["auth"]
    token: str


class ChatSendMessage(WireModel):
    type: Literal["chat_send"]
    workspace_id: str = Field(min_length=1)
    conversation_id: str | None = None
    message: str = Field(min_length=1)
    selected_files: list[str] | None = None
    model: str | None = None


class ChatRetryMessage(WireModel):
    type: Literal["chat_retry"]
    conversation_id: str = Field(min_length=1)


class ToolApprovalResponseMessage(WireModel):
    type: Literal["tool_approval_response"]
    tool_id: str
    approved: bool
    modified_input: Any = None
    reason: str | None = None


InboundMessage = Annotated[
    AuthMessage | ChatSendMessage | ChatRetryMessage | ToolApprovalResponseMessage,
    Field(discriminator="type"),
]

inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)

INBOUND_TYPES = frozenset({"auth", "chat_send", "chat_retry", "tool_approval_response"})


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class AuthSuccess(WireModel):
    type: Literal["auth_success"] = "auth_success"
    device_id: str


class AuthError(WireModel):
    type: Literal["auth_error"] = "auth_error"
    error: str


class ConversationCreated(WireModel):
    type: Literal["conversation_created"] = "conversation_created"
    workspace_id: str
    conversation_id: str
    is_retry: bool | None = None
    original_conversation_id: str | None = None


class ChatStart(WireModel):
    type: Literal["chat_start"] = "chat_start"
    workspace_id: str
    conversation_id: str


class ChatChunk(WireModel):
    type: Literal["chat_chunk"] = "chat_chunk"
    workspace_id: str
    conversation_id: str
    text: str


class ToolUse(WireModel):
    type: Literal["tool_use"] = "tool_use"
    workspace_id: str
    conversation_id: str
    tool: str
    input: Any = None


class ToolResult(WireModel):
    type: Literal["tool_result"] = "tool_result"
    workspace_id: str
    conversation_id: str
    result: Any = None


class ChatComplete(WireModel):
    type: Literal["chat_complete"] = "chat_complete"
    workspace_id: str
    conversation_id: str
    modified_files: list[str]
    token_usage: dict[str, Any] | None = None

    @classmethod
    def build(
        cls,
        workspace_id: str,
        conversation_id: str,
        modified_files: list[str],
        token_usage: TokenUsage | None,
    ) -> "ChatComplete":
        return cls(
            workspace_id=workspace_id,
            conversation_id=conversation_id,
            modified_files=modified_files,
            token_usage=token_usage.to_wire() if token_usage else None,
        )


class ChatError(WireModel):
    type: Literal["chat_error"] = "chat_error"
    workspace_id: str | None = None
    conversation_id: str | None = None
    error: str
    # Machine-readable reason for admission failures.
    code: str | None = None


class DiffReady(WireModel):
    type: Literal["diff_ready"] = "diff_ready"
    workspace_id: str
    conversation_id: str
    files: list[str]


class FilesSkipped(WireModel):
    type: Literal["files_skipped"] = "files_skipped"
    workspace_id: str
    conversation_id: str
    files: list[str]
    reason: str


class ToolApprovalRequest(WireModel):
    type: Literal["tool_approval_request"] = "tool_approval_request"
    tool_id: str
    name: str
    input: Any = None
    title: str
    description: str
    risk: str
    workspace_id: str | None = None
    conversation_id: str | None = None


class ToolApprovalConfirmed(WireModel):
    type: Literal["tool_approval_confirmed"] = "tool_approval_confirmed"
    tool_id: str
    approved: bool


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    error: str
