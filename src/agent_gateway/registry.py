"""Registry of active agent runners: the single concurrency authority.

Answers one question, "may this conversation start a run right now?", and
holds the runner handle for every run that was admitted. Two limits apply:

- per conversation: at most one registered runner per (workspace, conversation);
- global: at most `max_concurrent` runners across all conversations, since each
  one is a live agent process on this host.

admit() and register() are synchronous. Callers must register immediately
after a successful admit, without awaiting in between, so two admissions
can never interleave on the event loop.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum

from agent_gateway.runners.ports import AgentRunner

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_RUNNERS = 3

RunnerKey = tuple[str, str]


class AdmissionReason(StrEnum):
    CONVERSATION_BUSY = "conversation_busy"
    GLOBAL_LIMIT = "global_limit"


@dataclass(frozen=True)
class Admission:
    ok: bool
    reason: AdmissionReason | None = None


class RegistryError(Exception):
    """A caller tried to register without a valid admission."""


@dataclass
class RunnerState:
    runner: AgentRunner
    workspace_id: str
    conversation_id: str
    started_at: float = field(default_factory=time.monotonic)

    @property
    def key(self) -> RunnerKey:
        return (self.workspace_id, self.conversation_id)

    def age(self) -> float:
        return time.monotonic() - self.started_at


class RunnerRegistry:
    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT_RUNNERS) -> None:
        self._max_concurrent = max_concurrent
        self._active: dict[RunnerKey, RunnerState] = {}

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def admit(self, workspace_id: str, conversation_id: str) -> Admission:
        # Busy is checked first: a running conversation reports busy even
        # when the host is also full.
        if (workspace_id, conversation_id) in self._active:
            return Admission(ok=False, reason=AdmissionReason.CONVERSATION_BUSY)
        if len(self._active) >= self._max_concurrent:
            return Admission(ok=False, reason=AdmissionReason.GLOBAL_LIMIT)
        return Admission(ok=True)

    def register(self, workspace_id: str, conversation_id: str, runner: AgentRunner) -> RunnerState:
        admission = self.admit(workspace_id, conversation_id)
        if not admission.ok:
            raise RegistryError(
                f"Cannot register runner for {workspace_id}/{conversation_id}: {admission.reason}"
            )
        state = RunnerState(runner=runner, workspace_id=workspace_id, conversation_id=conversation_id)
        self._active[state.key] = state
        logger.info(
            "Runner registered for %s/%s (%d/%d active)",
            workspace_id, conversation_id, len(self._active), self._max_concurrent,
        )
        return state

    def release(self, workspace_id: str, conversation_id: str) -> bool:
        """Remove the entry; returns False if nothing was registered."""
        state = self._active.pop((workspace_id, conversation_id), None)
        if state is None:
            return False
        logger.info(
            "Runner released for %s/%s after %.1fs (%d/%d active)",
            workspace_id, conversation_id, state.age(), len(self._active), self._max_concurrent,
        )
        return True

    def get(self, workspace_id: str, conversation_id: str) -> RunnerState | None:
        return self._active.get((workspace_id, conversation_id))

    def is_busy(self, workspace_id: str, conversation_id: str) -> bool:
        return (workspace_id, conversation_id) in self._active

    def states(self) -> list[RunnerState]:
        return list(self._active.values())

    def stale(self, max_age_seconds: float) -> list[RunnerState]:
        return [s for s in self._active.values() if s.age() > max_age_seconds]

    def __len__(self) -> int:
        return len(self._active)
