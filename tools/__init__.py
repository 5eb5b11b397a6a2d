"""
Tool definitions and implementations for the review agent.
Each tool is a ToolDescriptor: an Anthropic-compatible schema plus an
``execute(args, context)`` function. Runs hold an immutable ToolRegistry.
"""

from tools._common import ToolContext, ToolResult, find_dangerous_command  # noqa: F401
from tools.registry import (  # noqa: F401
    ToolDescriptor,
    ToolRegistry,
    is_tool_named,
    normalize_tool_name,
)
from tools.dispatch import execute_tool, validate_arguments  # noqa: F401
from tools.sandbox import (  # noqa: F401
    DUPLICATE_SANDBOX_MESSAGE,
    SANDBOX_DENY_LIST,
    SandboxApprovalRequest,
    SandboxDecision,
    SandboxExecutor,
    approve_all,
    create_sandbox_tool,
    deny_non_interactive,
    single_use,
)
from tools.review_ops import REPORT_BUG, SUBMIT_REPORT, SUBMIT_SUMMARY, SUGGEST_CHANGE  # noqa: F401
from tools.catalog import READ_ONLY_TOOLS, build_base_registry, build_review_registry  # noqa: F401
