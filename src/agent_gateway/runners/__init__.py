"""Agent runner backends and the contracts they share."""

from agent_gateway.runners.factory import create_runner
from agent_gateway.runners.ports import (
    AgentRunner,
    PermissionMode,
    RunnerAbortedError,
    RunnerError,
    RunnerExitError,
    RunnerStartError,
    RunOptions,
)

__all__ = [
    "AgentRunner",
    "PermissionMode",
    "RunOptions",
    "RunnerAbortedError",
    "RunnerError",
    "RunnerExitError",
    "RunnerStartError",
    "create_runner",
]
