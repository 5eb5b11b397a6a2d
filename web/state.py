"""
Server-lifetime state for the review server.

One ServerState is created per app: it owns the pending sandbox approvals,
the git-root scan cache and the factories used to build a review, so tests
can run an app with fakes and no globals.
"""

import asyncio
import dataclasses
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from agent.events import AgentEvent
from changes import ChangedFile, ChangedFilesError, PlatformOption, get_changed_files, get_git_root
from config import ReviewConfig, app_config, review_config
from llm import ModelService, create_model_service
from tools.sandbox import ConfirmCallback, SandboxApprovalRequest, SandboxDecision

from web.stream import EventStream

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[Optional[str]], ModelService]
FilesProvider = Callable[[PlatformOption, str], List[ChangedFile]]

APPROVAL_TIMEOUT_REASON = "Approval timed out."
DENIED_REASON = "Denied by user."
DISCONNECTED_REASON = "Client disconnected before approving."


def _default_files_provider(platform: PlatformOption, working_directory: str) -> List[ChangedFile]:
    return get_changed_files(platform, cwd=working_directory)


@dataclass
class PendingApproval:
    request_id: str
    future: asyncio.Future
    stream: EventStream
    command: str


class ServerState:
    def __init__(
        self,
        working_directory: Optional[str] = None,
        service_factory: Optional[ServiceFactory] = None,
        files_provider: Optional[FilesProvider] = None,
        config: Optional[ReviewConfig] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.working_directory = os.path.abspath(working_directory or app_config.working_directory)
        self.service_factory = service_factory or create_model_service
        self.files_provider = files_provider or _default_files_provider
        self.config = config or review_config
        self.heartbeat_interval = heartbeat_interval or app_config.heartbeat_interval
        self.pending: Dict[str, PendingApproval] = {}
        self._git_roots: Dict[str, str] = {}

    def review_config_for(self, max_steps: int, review_language: str,
                          preflight: Optional[bool] = None) -> ReviewConfig:
        overrides = {"max_steps": max_steps, "review_language": review_language}
        if preflight is not None:
            overrides["preflight_enabled"] = preflight
        return dataclasses.replace(self.config, **overrides)

    def git_root(self, directory: str) -> str:
        """Repository root of ``directory`` (cached); the directory itself outside a repo."""
        key = os.path.abspath(directory)
        if key not in self._git_roots:
            try:
                self._git_roots[key] = get_git_root(key)
            except ChangedFilesError:
                self._git_roots[key] = key
        return self._git_roots[key]

    # ------------------------------------------------------------------
    # Sandbox approvals
    # ------------------------------------------------------------------

    def sandbox_confirm(self, stream: EventStream) -> ConfirmCallback:
        """Confirm callback that asks the client on ``stream`` and waits for its decision."""

        async def confirm(request: SandboxApprovalRequest) -> SandboxDecision:
            request_id = uuid.uuid4().hex
            future = asyncio.get_running_loop().create_future()
            self.pending[request_id] = PendingApproval(request_id, future, stream, request.command)
            try:
                await stream.send(AgentEvent(type="sandbox_request", data={
                    "requestId": request_id,
                    "toolCallId": request.tool_call_id,
                    "command": request.command,
                    "cwd": request.cwd,
                    "timeout": request.timeout_ms,
                }))
                wait_secs = (request.timeout_ms + self.config.sandbox_approval_grace_ms) / 1000
                try:
                    approved = await asyncio.wait_for(future, timeout=wait_secs)
                except asyncio.TimeoutError:
                    logger.info(f"Sandbox approval {request_id} timed out")
                    return SandboxDecision(approved=False, reason=APPROVAL_TIMEOUT_REASON)
            finally:
                self.pending.pop(request_id, None)
            if approved is None:
                return SandboxDecision(approved=False, reason=DISCONNECTED_REASON)
            return SandboxDecision(approved=bool(approved), reason=None if approved else DENIED_REASON)

        return confirm

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Apply a client decision. False when no such request is waiting."""
        pending = self.pending.get(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(approved)
        logger.info(f"Sandbox request {request_id} {'approved' if approved else 'denied'}: {pending.command}")
        return True

    def cancel_pending(self, stream: EventStream) -> None:
        """Deny every approval still waiting on ``stream``."""
        for pending in list(self.pending.values()):
            if pending.stream is stream and not pending.future.done():
                pending.future.set_result(None)
