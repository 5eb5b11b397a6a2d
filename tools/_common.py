"""Shared types for the tools package."""

import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from backend import Backend

# Async sink for streaming AgentEvents, e.g. sandbox output chunks
EventSink = Callable[[Any], Awaitable[None]]


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None

    @property
    def text(self) -> str:
        """What the model sees for this result."""
        if self.success:
            return self.output
        return f"Error: {self.error or 'Unknown error'}"


@dataclass(frozen=True)
class ToolContext:
    """Per-call execution context handed to every tool."""
    working_directory: str
    backend: Backend
    tool_call_id: Optional[str] = None
    platform: str = "local"
    emit: Optional[EventSink] = None
    provider: Optional[Any] = None  # PlatformProvider, for tools that post comments


def _deny_pattern(token: str) -> "re.Pattern":
    # Word-like tokens match as whole commands ("dd" must not match "add");
    # punctuation patterns such as the fork bomb match as plain substrings.
    escaped = re.escape(token)
    if not (token[0].isalnum() and token[-1].isalnum()):
        return re.compile(escaped)
    if " " in token:
        return re.compile(rf"(?<![\w-]){escaped}")
    return re.compile(rf"(?<![\w-]){escaped}(?![\w-])")


def find_dangerous_command(command: str, deny_list: Sequence[str]) -> Optional[str]:
    """First deny-list entry found in ``command``, or None."""
    for token in deny_list:
        if _deny_pattern(token).search(command or ""):
            return token
    return None
