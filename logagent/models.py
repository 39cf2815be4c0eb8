"""Structured log entry flowing from the tailer to the sink."""

from dataclasses import dataclass
from datetime import datetime, timezone

DEFAULT_LEVEL = "info"
TRUNCATION_MARKER = " [truncated]"


@dataclass(frozen=True)
class Entry:
    timestamp: datetime   # UTC, captured when the line was read
    node_name: str
    source: str           # originating file path
    message: str          # single line, at most max_line_length characters
    level: str = DEFAULT_LEVEL
    truncated: bool = False


def make_entry(
    line: str,
    source: str,
    node_name: str,
    max_line_length: int,
    level: str = DEFAULT_LEVEL,
    timestamp: datetime | None = None,
) -> Entry:
    """Build an Entry from a raw line.

    Trailing line terminators are removed and any embedded CR/LF is
    replaced by a space. Lines longer than *max_line_length* are cut to
    that length and flagged as truncated.
    """
    if not node_name:
        raise ValueError("node_name must not be empty")
    if not source:
        raise ValueError("source must not be empty")
    if max_line_length <= 0:
        raise ValueError("max_line_length must be positive")

    message = line.rstrip("\r\n")
    if "\n" in message or "\r" in message:
        message = message.replace("\r", " ").replace("\n", " ")

    truncated = len(message) > max_line_length
    if truncated:
        message = message[:max_line_length]

    return Entry(
        timestamp=timestamp or datetime.now(timezone.utc),
        node_name=node_name,
        source=source,
        message=message,
        level=level or DEFAULT_LEVEL,
        truncated=truncated,
    )
