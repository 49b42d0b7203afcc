"""Gateway configuration loaded from environment variables.

Every policy constant the orchestration layer depends on (concurrency
ceiling, rate-limit window, approval timeout, truncation thresholds) lives
here so deployments can tune it without touching code.
"""

from typing import Annotated, Literal

from pydantic import BeforeValidator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from agent_gateway.approvals import DEFAULT_READ_ONLY_TOOLS
from agent_gateway.runners.models import DEFAULT_MODEL_ID


def _parse_comma_separated(value: object) -> list[str]:
    """Convert env var formats into a list of strings.

    Handles a comma-separated string (``"Read,Glob,Grep"``) or an
    already-parsed list.
    """
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value  # type: ignore[return-value]


CommaSeparatedStrs = Annotated[list[str], NoDecode, BeforeValidator(_parse_comma_separated)]


class GatewaySettings(BaseSettings):
    """All settings required by the gateway server."""

    # HS256 secret used to verify device tokens.
    jwt_secret: str
    jwt_expires_days: int = 7

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3000

    # Which agent backend runs chats: the Agent SDK or the raw CLI subprocess.
    runner_backend: Literal["sdk", "cli"] = "sdk"
    claude_cli_path: str = "claude"
    claude_model: str = DEFAULT_MODEL_ID
    claude_permission_mode: Literal["default", "acceptEdits", "bypassPermissions"] = (
        "bypassPermissions"
    )
    max_turns_chat: int = 20

    # Hard ceiling on one agent run; the stale sweep uses the same age.
    runner_timeout_seconds: float = 600.0
    # How long an aborted run may take to wind down before it is cancelled.
    runner_abort_grace_seconds: float = 10.0
    stale_runner_check_seconds: float = 60.0

    # Number of agent processes the host can sustain at once.
    max_concurrent_runners: int = 3

    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 10

    tool_approval_enabled: bool = False
    tool_approval_timeout_seconds: float = 120.0
    auto_approve_read_only: bool = True
    read_only_tools: CommaSeparatedStrs = sorted(DEFAULT_READ_ONLY_TOOLS)

    # Truncation policy for prompt context and forwarded tool output.
    context_history_count: int = 5
    history_message_chars: int = 2000
    text_file_max_bytes: int = 1 * 1024 * 1024
    attachment_max_bytes: int = 20 * 1024 * 1024
    tool_result_max_chars: int = 2000

    # Bootstrap data for the in-memory store: workspace id -> absolute path,
    # and the device ids allowed to authenticate.
    workspaces: dict[str, str] = {}
    device_ids: CommaSeparatedStrs = []

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
