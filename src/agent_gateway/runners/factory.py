"""Backend selection for agent runners."""

from typing import Literal

from agent_gateway.runners.cli_runner import ClaudeCliRunner
from agent_gateway.runners.ports import AgentRunner
from agent_gateway.runners.sdk_runner import ClaudeSDKRunner

RunnerBackend = Literal["sdk", "cli"]

_DEFAULT_CLI_BINARY = "claude"


def create_runner(backend: RunnerBackend = "sdk", cli_path: str = _DEFAULT_CLI_BINARY) -> AgentRunner:
    """Build a fresh single-use runner for one chat turn."""
    if backend == "cli":
        return ClaudeCliRunner(cli_path=cli_path)
    if backend == "sdk":
        # The SDK ships its own CLI; a bare "claude" means "use the default".
        return ClaudeSDKRunner(cli_path=None if cli_path == _DEFAULT_CLI_BINARY else cli_path)
    raise ValueError(f"Unknown runner backend: {backend}")
