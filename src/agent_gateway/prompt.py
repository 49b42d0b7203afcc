"""Prompt assembly for one chat turn.

The agent reads files itself, so selected files are listed by path rather
than inlined. They are still size-checked first so the agent is not pointed
at something it would choke on. Prior turns are only replayed when there is
no agent session to resume; a resumed session already carries its context.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from agent_gateway.store import HistoryMessage
from agent_gateway.truncate import (
    Limits,
    check_file_size,
    format_file_size,
    truncate_history,
    truncate_text,
)

logger = logging.getLogger(__name__)

SKIPPED_FILES_REASON = "File size exceeds limit or file is not available"

_TOOL_INTERACTION = "[tool interaction]"


@dataclass
class ContextFiles:
    included: list[str] = field(default_factory=list)
    # Human-readable entries, e.g. "big.bin (25.0 MB > 20.0 MB)".
    skipped: list[str] = field(default_factory=list)


def _resolve_in_workspace(workspace_root: Path, user_path: str) -> Path:
    """Resolve a client-supplied path and ensure it stays inside the workspace.

    Raises ValueError on traversal attempts.
    """
    target = (workspace_root / user_path).resolve()
    if not target.is_relative_to(workspace_root):
        raise ValueError(f"Path traversal detected: {user_path}")
    return target


def select_context_files(workspace_path: str, selected_files: list[str], limits: Limits) -> ContextFiles:
    result = ContextFiles()
    if not selected_files:
        return result

    root = Path(workspace_path).resolve()
    for user_path in selected_files:
        try:
            target = _resolve_in_workspace(root, user_path)
        except ValueError:
            logger.warning("Selected file outside workspace rejected: %s", user_path)
            result.skipped.append(f"{user_path} (outside workspace)")
            continue

        check = check_file_size(target, limits)
        if check.ok:
            result.included.append(user_path)
        elif check.limit == 0:
            result.skipped.append(f"{user_path} (not found)")
        else:
            result.skipped.append(
                f"{user_path} ({format_file_size(check.size)} > {format_file_size(check.limit)})"
            )
    return result


def _history_line(message: HistoryMessage, limits: Limits) -> str:
    content = message.content or (_TOOL_INTERACTION if message.tool_calls else "")
    return f"{message.role}: {truncate_text(content, limits.message_chars)}"


def build_prompt(
    message: str,
    context_files: list[str],
    history: list[HistoryMessage],
    has_session: bool,
    limits: Limits,
) -> str:
    prompt = message
    if context_files:
        prompt += f"\n\nSelected files for context: {', '.join(context_files)}"
    if history and not has_session:
        recent = truncate_history(history, limits.history_count)
        prompt += "\n\nRecent conversation:\n" + "\n".join(
            _history_line(m, limits) for m in recent
        )
    return prompt
