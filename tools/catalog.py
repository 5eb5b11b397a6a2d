"""
The base tool catalog: every I/O tool wrapped as a ToolDescriptor.

Plain tool functions take ``backend``/``working_directory`` keywords; the
wrappers here bind them from the per-call ToolContext.
"""

from typing import Any, Callable, Dict, Optional

from tools._common import ToolContext, ToolResult
from tools.external_ops import PLAN_STATUSES, fetch_url, run_command, thinking, update_plan
from tools.file_ops import read_diff, read_file
from tools.registry import ToolDescriptor, ToolRegistry
from tools.review_ops import REPORT_BUG, SUGGEST_CHANGE
from tools.sandbox import SandboxExecutor, create_sandbox_tool
from tools.search_ops import glob_find, grep, list_directory

READ_ONLY_TOOLS = ("read_file", "read_diff", "glob", "grep", "ls")


def _bind(fn: Callable[..., ToolResult]) -> Callable[[Dict[str, Any], ToolContext], ToolResult]:
    def execute(args: Dict[str, Any], context: ToolContext) -> ToolResult:
        return fn(**args, backend=context.backend, working_directory=context.working_directory)
    return execute


def _read_diff(args: Dict[str, Any], context: ToolContext) -> ToolResult:
    return read_diff(args["path"], platform=context.platform,
                     backend=context.backend, working_directory=context.working_directory)


BASE_TOOLS = (
    ToolDescriptor(
        name="read_file",
        description="Read a file from the repository with line numbers. Use offset/limit for large files.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the repository root"},
                "offset": {"type": "integer", "description": "1-based first line"},
                "limit": {"type": "integer", "description": "Number of lines"},
            },
            "required": ["path"],
        },
        execute=_bind(read_file),
    ),
    ToolDescriptor(
        name="read_diff",
        description="Show the diff under review for one changed file.",
        input_schema={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
        execute=_read_diff,
    ),
    ToolDescriptor(
        name="ls",
        description="List a directory, honoring .gitignore.",
        input_schema={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Directory (default '.')"}},
        },
        execute=_bind(list_directory),
    ),
    ToolDescriptor(
        name="glob",
        description="Find files by glob pattern, e.g. '**/*.py'.",
        input_schema={
            "type": "object",
            "properties": {"pattern": {"type": "string"}},
            "required": ["pattern"],
        },
        execute=_bind(glob_find),
    ),
    ToolDescriptor(
        name="grep",
        description="Search file contents by regular expression.",
        input_schema={
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "path": {"type": "string", "description": "File or directory to search (default '.')"},
                "include": {"type": "string", "description": "Glob filter, e.g. '*.ts'"},
            },
            "required": ["pattern"],
        },
        execute=_bind(grep),
    ),
    ToolDescriptor(
        name="bash",
        description=(
            "Run a shell command directly in the repository. Prefer sandbox_exec for anything "
            "that builds, installs or executes project code."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "command": {"type": "string"},
                "cwd": {"type": "string"},
                "timeout": {"type": "integer", "description": "Timeout in milliseconds (default 10000)"},
            },
            "required": ["command"],
        },
        execute=_bind(run_command),
    ),
    ToolDescriptor(
        name="fetch",
        description="HTTP GET a URL (documentation, specifications). HTML is reduced to text.",
        input_schema={
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "timeout": {"type": "integer", "description": "Seconds (default 15, max 60)"},
            },
            "required": ["url"],
        },
        execute=_bind(fetch_url),
    ),
    ToolDescriptor(
        name="plan",
        description="Maintain plan.md: the current step list with statuses, plus an execution log and notes.",
        input_schema={
            "type": "object",
            "properties": {
                "steps": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "step": {"type": "string"},
                            "status": {"type": "string", "enum": list(PLAN_STATUSES)},
                        },
                        "required": ["step"],
                    },
                },
                "logEntry": {"type": "string"},
                "note": {"type": "string"},
            },
            "required": ["steps"],
        },
        execute=_bind(update_plan),
    ),
    ToolDescriptor(
        name="thinking",
        description="Think out loud. The thought is recorded in the transcript and has no other effect.",
        input_schema={
            "type": "object",
            "properties": {"thought": {"type": "string"}},
            "required": ["thought"],
        },
        execute=lambda args, context: thinking(args["thought"]),
    ),
    REPORT_BUG,
)


def build_base_registry(sandbox: Optional[SandboxExecutor] = None) -> ToolRegistry:
    """Registry of the I/O tools plus ``sandbox_exec`` when an executor is given."""
    descriptors = list(BASE_TOOLS)
    if sandbox is not None:
        descriptors.append(create_sandbox_tool(sandbox))
    return ToolRegistry(descriptors)


def build_review_registry(sandbox: Optional[SandboxExecutor] = None) -> ToolRegistry:
    """Base registry plus the main-session tools that post to the platform."""
    return build_base_registry(sandbox).with_tools(SUGGEST_CHANGE)
