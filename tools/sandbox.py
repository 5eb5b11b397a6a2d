"""
Sandboxed command execution.

A sandbox run copies the workspace into a fresh temporary directory, asks a
human for approval, runs one shell command inside the copy while streaming
its output, and removes the copy on every exit path. A non-zero exit is a
normal result here: it is usually the evidence a reviewer was looking for.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from agent.events import AgentEvent
from backend import LocalBackend
from config import review_config
from tools._common import ToolContext, find_dangerous_command
from tools.gitignore import sandbox_copy_ignore
from tools.registry import ToolDescriptor

logger = logging.getLogger(__name__)

SANDBOX_DENY_LIST = (
    "rm -rf", "mkfs", "dd", ":(){", "wget", "curl", "sudo", "chmod 777",
    "chown", "shutdown", "reboot", "mount", "umount", "docker", "podman",
)
SANDBOX_DIR_PREFIX = "review-sandbox-"
NON_INTERACTIVE_DENIAL = "Non-interactive session; unable to prompt for approval."
DUPLICATE_SANDBOX_MESSAGE = (
    "Duplicate sandbox_exec prevented: only one sandbox command may run in this session. "
    "Use the output you already have and record the result with report_bug."
)


@dataclass
class SandboxApprovalRequest:
    command: str
    cwd: str
    timeout_ms: int
    tool_call_id: Optional[str] = None


@dataclass
class SandboxDecision:
    approved: bool
    reason: Optional[str] = None


ConfirmCallback = Callable[[SandboxApprovalRequest], Awaitable[SandboxDecision]]
EventCallback = Callable[[AgentEvent], Awaitable[None]]


async def deny_non_interactive(request: SandboxApprovalRequest) -> SandboxDecision:
    """Default confirm: nobody can be asked, so nothing runs."""
    return SandboxDecision(approved=False, reason=NON_INTERACTIVE_DENIAL)


async def approve_all(request: SandboxApprovalRequest) -> SandboxDecision:
    """Explicit opt-in auto-approval (SANDBOX_AUTO_APPROVE)."""
    logger.warning(f"Auto-approving sandbox command: {request.command}")
    return SandboxDecision(approved=True)


@dataclass
class SandboxRun:
    """State of one sandbox execution, owned by the executor for its lifetime."""
    run_id: str
    command: str
    cwd: str
    timeout_ms: int
    preserve_sandbox: bool = False
    tool_call_id: Optional[str] = None
    approval: str = "pending"   # pending | approved | denied
    status: str = "running"     # running | success | nonzero | timed_out | denied | dangerous | error
    chunks: List[Tuple[str, str]] = field(default_factory=list)  # (stdout|stderr|system, text)
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    duration_ms: int = 0
    sandbox_root: str = ""
    sandbox_cwd: str = ""
    output_bytes: int = 0
    truncated: bool = False
    error_message: Optional[str] = None

    def stream_text(self, stream: str) -> str:
        return "".join(text for s, text in self.chunks if s == stream)


def resolve_sandbox_cwd(sandbox_root: str, workspace_root: str, cwd: Optional[str]) -> str:
    """Map a caller-supplied cwd into the sandbox copy. Anything escaping it clamps to the root."""
    requested = (cwd or ".").strip() or "."
    if os.path.isabs(requested):
        rel = os.path.relpath(os.path.normpath(requested), os.path.abspath(workspace_root))
    else:
        rel = os.path.normpath(requested)
    if rel == "." or rel == ".." or rel.startswith(".." + os.sep) or os.path.isabs(rel):
        return sandbox_root
    candidate = os.path.join(sandbox_root, rel)
    real_root = os.path.realpath(sandbox_root)
    real_candidate = os.path.realpath(candidate)
    if real_candidate != real_root and not real_candidate.startswith(real_root + os.sep):
        return sandbox_root
    if not os.path.isdir(candidate):
        return sandbox_root
    return candidate


class SandboxExecutor:
    """Runs approved commands inside disposable copies of one workspace."""

    def __init__(
        self,
        workspace_root: str,
        confirm: Optional[ConfirmCallback] = None,
        on_event: Optional[EventCallback] = None,
        *,
        default_timeout_ms: Optional[int] = None,
        max_output_bytes: Optional[int] = None,
        temp_root: Optional[str] = None,
    ):
        self.workspace_root = os.path.abspath(workspace_root)
        self.confirm = confirm or deny_non_interactive
        self.on_event = on_event
        self.default_timeout_ms = default_timeout_ms or review_config.sandbox_timeout_ms
        self.max_output_bytes = max_output_bytes or review_config.sandbox_max_output_bytes
        self.temp_root = temp_root
        self.runs: List[SandboxRun] = []

    async def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.on_event is not None:
            await self.on_event(AgentEvent(type=event_type, data=data))

    async def _record_chunk(self, run: SandboxRun, stream: str, text: str) -> None:
        if not text or run.truncated:
            return
        size = len(text.encode("utf-8", errors="replace"))
        remaining = self.max_output_bytes - run.output_bytes
        if size > remaining:
            text = text.encode("utf-8", errors="replace")[:max(remaining, 0)].decode("utf-8", errors="ignore")
            size = remaining
            run.truncated = True
        run.output_bytes += size
        if text:
            run.chunks.append((stream, text))
            await self._emit("sandbox_run_output", {"runId": run.run_id, "stream": stream, "text": text})
        if run.truncated:
            notice = f"[output truncated at {self.max_output_bytes} bytes]\n"
            run.chunks.append(("system", notice))
            await self._emit("sandbox_run_output", {"runId": run.run_id, "stream": "system", "text": notice})

    async def _run_command(self, run: SandboxRun) -> None:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def on_output(chunk: str, is_stderr: bool) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, ("stderr" if is_stderr else "stdout", chunk))

        async def forward() -> None:
            while True:
                item = await queue.get()
                if item is None:
                    return
                await self._record_chunk(run, *item)

        forwarder = asyncio.ensure_future(forward())
        backend = LocalBackend(run.sandbox_root)
        stop = threading.Event()
        worker = asyncio.ensure_future(asyncio.to_thread(
            backend.run_command_stream,
            run.command,
            os.path.relpath(run.sandbox_cwd, run.sandbox_root),
            run.timeout_ms / 1000,
            on_output,
            stop,
        ))
        try:
            result = await asyncio.shield(worker)
        except asyncio.CancelledError:
            # The thread outlives the cancelled await: kill the process and
            # wait for it before the sandbox directory is removed.
            stop.set()
            await asyncio.wait([worker])
            forwarder.cancel()
            run.status = "error"
            run.error_message = "Run cancelled"
            logger.info(f"Sandbox run {run.run_id} cancelled; process killed")
            raise
        finally:
            queue.put_nowait(None)
        await forwarder

        run.exit_code = result.returncode
        run.signal = result.signal_name
        if result.timed_out:
            run.status = "timed_out"
        elif result.returncode == 0:
            run.status = "success"
        else:
            run.status = "nonzero"

    def _format_result(self, run: SandboxRun) -> str:
        lines = [f"Sandbox root: {run.sandbox_root}"]
        if run.sandbox_cwd and run.sandbox_cwd != run.sandbox_root:
            lines.append(f"Sandbox cwd: {run.sandbox_cwd}")
        if run.status == "timed_out":
            lines.append(f"Command timed out after {run.timeout_ms}ms")
        elif run.status == "nonzero":
            detail = f" (signal {run.signal})" if run.signal else ""
            lines.append(f"Exit code: {run.exit_code}{detail}")

        stdout, stderr = run.stream_text("stdout"), run.stream_text("stderr")
        if stdout:
            lines.append(f"STDOUT:\n{stdout.rstrip()}")
        if stderr:
            lines.append(f"STDERR:\n{stderr.rstrip()}")
        if not stdout and not stderr and run.status == "success":
            lines.append("Command executed successfully with no output.")
        if run.truncated:
            lines.append(f"[output truncated at {self.max_output_bytes} bytes]")
        return "\n".join(lines)

    async def execute(
        self,
        command: str,
        cwd: Optional[str] = ".",
        timeout_ms: Optional[int] = None,
        preserve_sandbox: bool = False,
        tool_call_id: Optional[str] = None,
    ) -> str:
        """Run ``command`` in a sandbox copy and return the text the model sees."""
        run = SandboxRun(
            run_id=uuid.uuid4().hex,
            command=command,
            cwd=cwd or ".",
            timeout_ms=int(timeout_ms or self.default_timeout_ms),
            preserve_sandbox=preserve_sandbox,
            tool_call_id=tool_call_id,
        )
        self.runs.append(run)

        dangerous = find_dangerous_command(command, SANDBOX_DENY_LIST)
        if dangerous:
            run.status = "dangerous"
            logger.warning(f"Sandbox refused dangerous command ({dangerous}): {command}")
            return f"Error: Potentially dangerous command detected: {dangerous}"

        decision = await self.confirm(SandboxApprovalRequest(
            command=command, cwd=run.cwd, timeout_ms=run.timeout_ms, tool_call_id=tool_call_id,
        ))
        if not decision.approved:
            run.approval = "denied"
            run.status = "denied"
            logger.info(f"Sandbox command denied: {command}")
            return f"Sandbox execution denied. {decision.reason or 'Approval required.'}"
        run.approval = "approved"

        started = time.monotonic()
        try:
            run.sandbox_root = tempfile.mkdtemp(prefix=SANDBOX_DIR_PREFIX, dir=self.temp_root)
            await asyncio.to_thread(
                shutil.copytree, self.workspace_root, run.sandbox_root,
                symlinks=True, ignore=sandbox_copy_ignore, dirs_exist_ok=True,
            )
            run.sandbox_cwd = resolve_sandbox_cwd(run.sandbox_root, self.workspace_root, run.cwd)
            await self._emit("sandbox_run_start", {
                "runId": run.run_id,
                "toolCallId": tool_call_id,
                "command": command,
                "cwd": run.cwd,
                "timeout": run.timeout_ms,
                "sandboxRoot": run.sandbox_root,
                "sandboxCwd": run.sandbox_cwd,
            })
            logger.info(f"Sandbox run {run.run_id}: {command} (cwd={run.sandbox_cwd})")
            await self._run_command(run)
            return self._format_result(run)
        except Exception as e:
            if run.status == "running":
                run.status = "error"
            run.error_message = str(e)
            logger.exception(f"Sandbox run {run.run_id} failed")
            return f"Error executing command: {e}"
        finally:
            run.duration_ms = int((time.monotonic() - started) * 1000)
            if run.sandbox_root and not preserve_sandbox:
                shutil.rmtree(run.sandbox_root, ignore_errors=True)
                if os.path.exists(run.sandbox_root):
                    logger.warning(f"Sandbox directory could not be removed: {run.sandbox_root}")
            if run.sandbox_root:
                await self._emit("sandbox_run_end", {
                    "runId": run.run_id,
                    "status": run.status,
                    "exitCode": run.exit_code,
                    "signal": run.signal,
                    "durationMs": run.duration_ms,
                    "sandboxRoot": run.sandbox_root,
                    "sandboxCwd": run.sandbox_cwd,
                    "truncated": run.truncated,
                    "errorMessage": run.error_message,
                })


SANDBOX_EXEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "Shell command to run inside the sandbox copy"},
        "cwd": {"type": "string", "description": "Working directory relative to the workspace root (default '.')"},
        "timeout": {"type": "integer", "description": "Timeout in milliseconds (default 10000)"},
        "preserveSandbox": {"type": "boolean", "description": "Keep the sandbox directory after the run"},
    },
    "required": ["command"],
}


def create_sandbox_tool(executor: SandboxExecutor) -> ToolDescriptor:
    async def execute(args: Dict[str, Any], context: ToolContext) -> str:
        return await executor.execute(
            args["command"],
            cwd=args.get("cwd") or ".",
            timeout_ms=args.get("timeout"),
            preserve_sandbox=bool(args.get("preserveSandbox", False)),
            tool_call_id=context.tool_call_id,
        )

    return ToolDescriptor(
        name="sandbox_exec",
        description=(
            "Run one shell command inside an isolated copy of the workspace to reproduce or falsify a "
            "suspected bug. Every run needs user approval. A non-zero exit code is evidence, not a failure: "
            "do not retry the same command."
        ),
        input_schema=SANDBOX_EXEC_SCHEMA,
        execute=execute,
    )


def single_use(descriptor: ToolDescriptor,
               message: str = DUPLICATE_SANDBOX_MESSAGE) -> ToolDescriptor:
    """Wrap a tool so only its first call executes; later calls get ``message``."""
    used = False

    async def execute(args: Dict[str, Any], context: ToolContext) -> Any:
        nonlocal used
        if used:
            logger.info(f"Blocked repeated {descriptor.name} call")
            return message
        used = True
        if descriptor.is_async:
            return await descriptor.execute(args, context)
        return await asyncio.to_thread(descriptor.execute, args, context)

    return ToolDescriptor(
        name=descriptor.name,
        description=descriptor.description + " Only one call is allowed in this session.",
        input_schema=descriptor.input_schema,
        execute=execute,
    )
