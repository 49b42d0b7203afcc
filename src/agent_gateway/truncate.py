"""Text and file truncation policy.

Bounds how much prior conversation, file content and tool output is pushed
into prompts or forwarded to clients. The thresholds are configuration
(see GatewaySettings); `Limits()` holds the defaults.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

T = TypeVar("T")

# Extensions checked against the text-file limit rather than the attachment limit.
_TEXT_EXTENSIONS = frozenset({
    ".txt", ".md", ".markdown", ".json", ".yaml", ".yml",
    ".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs",
    ".py", ".rb", ".go", ".rs", ".java", ".kt", ".scala",
    ".c", ".cpp", ".h", ".hpp", ".cs", ".swift",
    ".html", ".htm", ".css", ".scss", ".sass", ".less",
    ".xml", ".svg", ".sql", ".sh", ".bash", ".zsh",
    ".env", ".gitignore", ".dockerignore", ".editorconfig",
    ".toml", ".ini", ".cfg", ".conf", ".properties",
    ".vue", ".svelte", ".astro",
})


@dataclass(frozen=True)
class Limits:
    message_chars: int = 2000
    history_count: int = 5
    text_file_bytes: int = 1 * 1024 * 1024
    attachment_bytes: int = 20 * 1024 * 1024
    tool_result_chars: int = 2000


@dataclass(frozen=True)
class FileSizeCheck:
    ok: bool
    size: int
    limit: int
    is_text: bool


def truncate_text(text: str, max_length: int) -> str:
    """Cut `text` to at most `max_length` characters, marking the cut with '...'."""
    if len(text) <= max_length:
        return text
    return text[: max(max_length - 3, 0)] + "..."


def truncate_history(messages: list[T], max_count: int) -> list[T]:
    """Keep only the most recent `max_count` items."""
    if max_count <= 0:
        return []
    return messages[-max_count:]


def is_text_file(path: str | Path) -> bool:
    p = Path(path)
    # Dotfiles like ".env" have no suffix; their name is the extension.
    suffix = p.suffix or (p.name if p.name.startswith(".") else "")
    return suffix.lower() in _TEXT_EXTENSIONS


def check_file_size(path: str | Path, limits: Limits) -> FileSizeCheck:
    """Check a file against the text or attachment size limit.

    Missing or unreadable files are reported as not ok with size 0.
    """
    try:
        size = Path(path).stat().st_size
    except OSError:
        return FileSizeCheck(ok=False, size=0, limit=0, is_text=False)

    is_text = is_text_file(path)
    limit = limits.text_file_bytes if is_text else limits.attachment_bytes
    return FileSizeCheck(ok=size <= limit, size=size, limit=limit, is_text=is_text)


def format_file_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"
