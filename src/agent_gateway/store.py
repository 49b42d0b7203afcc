"""Collaborators the session layer consults for persistent state.

The gateway never talks to a database directly; it goes through the three
narrow protocols below. InMemoryStore implements all of them and is what
the server wires up by default, seeded from configuration.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from agent_gateway.schemas.streaming import TokenUsage

DEFAULT_CONVERSATION_TITLE = "New Conversation"

_TITLE_MAX_CHARS = 50
_RETRY_TITLE_MAX_CHARS = 40

Role = Literal["user", "assistant"]


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def conversation_title(first_message: str) -> str:
    if len(first_message) <= _TITLE_MAX_CHARS:
        return first_message
    return first_message[:_TITLE_MAX_CHARS] + "..."


def retry_title(message: str) -> str:
    return f"Retry: {message[:_RETRY_TITLE_MAX_CHARS]}..."


@dataclass
class Workspace:
    id: str
    path: str
    system_prompt: str | None = None


@dataclass
class Conversation:
    id: str
    workspace_id: str
    title: str = DEFAULT_CONVERSATION_TITLE
    # Agent-side session to resume on the next turn.
    agent_session_id: str | None = None
    token_usage: TokenUsage | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass
class HistoryMessage:
    id: str
    conversation_id: str
    role: Role
    content: str
    tool_calls: list[Any] | None = None
    tool_results: list[Any] | None = None
    created_at: float = field(default_factory=time.time)


class ConversationStore(Protocol):
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    async def create_conversation(
        self, conversation_id: str, workspace_id: str, title: str = DEFAULT_CONVERSATION_TITLE
    ) -> Conversation:
        ...

    async def update_conversation(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        agent_session_id: str | None = None,
        token_usage: TokenUsage | None = None,
    ) -> None:
        ...

    async def get_history(self, conversation_id: str) -> list[HistoryMessage]:
        """All messages of the conversation, oldest first."""
        ...

    async def save_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        tool_calls: list[Any] | None = None,
        tool_results: list[Any] | None = None,
    ) -> str:
        ...

    async def get_last_user_message(self, conversation_id: str) -> HistoryMessage | None:
        ...


class WorkspaceLookup(Protocol):
    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        ...


class DeviceRegistry(Protocol):
    async def device_exists(self, device_id: str) -> bool:
        ...


class InMemoryStore:
    """Process-local implementation of every collaborator protocol."""

    def __init__(self) -> None:
        self._workspaces: dict[str, Workspace] = {}
        self._devices: set[str] = set()
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[HistoryMessage]] = {}

    def add_workspace(self, workspace: Workspace) -> None:
        self._workspaces[workspace.id] = workspace

    def add_device(self, device_id: str) -> None:
        self._devices.add(device_id)

    def remove_device(self, device_id: str) -> None:
        self._devices.discard(device_id)

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self._workspaces.get(workspace_id)

    async def device_exists(self, device_id: str) -> bool:
        return device_id in self._devices

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def create_conversation(
        self, conversation_id: str, workspace_id: str, title: str = DEFAULT_CONVERSATION_TITLE
    ) -> Conversation:
        if conversation_id in self._conversations:
            raise ValueError(f"Conversation {conversation_id} already exists")
        conversation = Conversation(id=conversation_id, workspace_id=workspace_id, title=title)
        self._conversations[conversation_id] = conversation
        self._messages[conversation_id] = []
        return conversation

    async def update_conversation(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        agent_session_id: str | None = None,
        token_usage: TokenUsage | None = None,
    ) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        if title is not None:
            conversation.title = title
        if agent_session_id is not None:
            conversation.agent_session_id = agent_session_id
        if token_usage is not None:
            conversation.token_usage = token_usage
        conversation.updated_at = time.time()

    async def get_history(self, conversation_id: str) -> list[HistoryMessage]:
        return list(self._messages.get(conversation_id, []))

    async def save_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        tool_calls: list[Any] | None = None,
        tool_results: list[Any] | None = None,
    ) -> str:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        message = HistoryMessage(
            id=generate_id("msg"),
            conversation_id=conversation_id,
            role=role,
            content=content,
            tool_calls=tool_calls,
            tool_results=tool_results,
        )
        self._messages[conversation_id].append(message)
        conversation.updated_at = message.created_at
        return message.id

    async def get_last_user_message(self, conversation_id: str) -> HistoryMessage | None:
        for message in reversed(self._messages.get(conversation_id, [])):
            if message.role == "user":
                return message
        return None
