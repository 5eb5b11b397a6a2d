"""
Platform providers: where the finished review and usage telemetry go.

A local run logs comments and keeps usage in memory; the web provider is a
no-op sink because the browser receives everything over the event stream.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from changes import PlatformOption

logger = logging.getLogger(__name__)


class PlatformProvider(ABC):
    """Delivery sink for review comments and usage."""

    @abstractmethod
    def post_review_comment(self, body: str, file_name: Optional[str] = None,
                            line: Optional[int] = None) -> Optional[str]:
        """Post a review comment (optionally anchored to a file line). Returns a URL or id if any."""

    @abstractmethod
    def post_thread_comment(self, body: str) -> Optional[str]:
        """Post a top-level comment on the review thread."""

    @abstractmethod
    def submit_usage(self, token_usage: Dict[str, int], tool_usage: List[Dict[str, Any]]) -> None:
        """Record token and tool usage of a finished review."""

    @abstractmethod
    def get_platform_option(self) -> PlatformOption:
        pass

    @abstractmethod
    def get_repo_id(self) -> str:
        pass


class LocalProvider(PlatformProvider):
    """Local runs: comments go to the log and are kept for the CLI to print."""

    def __init__(self, repo_id: str = "local_repo"):
        self.repo_id = repo_id
        self.comments: List[Dict[str, Any]] = []
        self.usage: List[Dict[str, Any]] = []

    def post_review_comment(self, body, file_name=None, line=None):
        self.comments.append({"body": body, "file": file_name, "line": line})
        where = f" on {file_name}:{line}" if file_name else ""
        logger.info(f"Review comment{where}: {body[:200]}")
        return None

    def post_thread_comment(self, body):
        self.comments.append({"body": body, "file": None, "line": None})
        logger.info(f"Thread comment: {body[:200]}")
        return None

    def submit_usage(self, token_usage, tool_usage):
        self.usage.append({"tokens": dict(token_usage), "tools": list(tool_usage)})
        logger.info(f"Usage: {token_usage}, {len(tool_usage)} tool call(s)")

    def get_platform_option(self) -> PlatformOption:
        return PlatformOption.LOCAL

    def get_repo_id(self) -> str:
        return self.repo_id


class WebProvider(PlatformProvider):
    """Web sessions: every delivery is a no-op."""

    def __init__(self, platform: PlatformOption = PlatformOption.LOCAL):
        self.platform = PlatformOption(platform)

    def post_review_comment(self, body, file_name=None, line=None):
        return None

    def post_thread_comment(self, body):
        return None

    def submit_usage(self, token_usage, tool_usage):
        return None

    def get_platform_option(self) -> PlatformOption:
        return self.platform

    def get_repo_id(self) -> str:
        if self.platform == PlatformOption.GITHUB:
            return "github_repo_anonymous"
        return "web_repo_anonymous"


def get_platform_provider(platform: str, web: bool = False) -> PlatformProvider:
    """Provider for a platform name; ``web`` selects the no-op sink used by the server."""
    option = PlatformOption(platform)
    if web or option == PlatformOption.GITHUB:
        return WebProvider(option)
    return LocalProvider()
