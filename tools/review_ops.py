"""Review artifact tools: summaries, sub-agent reports, bug cards and inline suggestions."""

import logging
from typing import Any, Dict

from tools._common import ToolContext, ToolResult
from tools.registry import ToolDescriptor

logger = logging.getLogger(__name__)

BUG_STATUSES = ("VERIFIED", "UNVERIFIED")
BUG_SEVERITIES = ("low", "medium", "high", "critical")
BUG_RECORDED = "Bug recorded."


def _report_schema(description: str) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {"report": {"type": "string", "description": description}},
        "required": ["report"],
    }


def submit_summary(args: Dict[str, Any], context: ToolContext) -> ToolResult:
    report = (args.get("report") or "").strip()
    if not report:
        return ToolResult(success=False, output="", error="report must not be empty")
    return ToolResult(success=True, output="Summary submitted.")


def submit_report(args: Dict[str, Any], context: ToolContext) -> ToolResult:
    return ToolResult(success=True, output="Report submitted.")


def report_bug(args: Dict[str, Any], context: ToolContext) -> str:
    logger.info(
        f"Bug card [{args.get('status', 'UNVERIFIED')}/{args.get('severity', 'medium')}]: "
        f"{args.get('title', '')} ({args.get('filePath') or 'no file'})"
    )
    return BUG_RECORDED


def suggest_change(args: Dict[str, Any], context: ToolContext) -> ToolResult:
    if context.provider is None:
        return ToolResult(success=False, output="", error="No review platform is attached to this session")
    body = args["comment"]
    if args.get("suggestion"):
        body += f"\n\n```suggestion\n{args['suggestion']}\n```"
    location = context.provider.post_review_comment(body, file_name=args["filePath"], line=args.get("line"))
    where = f"{args['filePath']}:{args['line']}" if args.get("line") else args["filePath"]
    return ToolResult(success=True, output=f"Suggestion posted on {where}" + (f" ({location})" if location else ""))


SUBMIT_SUMMARY = ToolDescriptor(
    name="submit_summary",
    description=(
        "Submit the final review summary. Call this exactly once when the review is complete; "
        "the review is not finished until you do."
    ),
    input_schema=_report_schema("The complete review in markdown"),
    execute=submit_summary,
)

SUBMIT_REPORT = ToolDescriptor(
    name="submit_report",
    description=(
        "Submit your final report to the parent reviewer. The report must contain the sections "
        "## Summary, ## Findings, ## Recommendations and ## Conclusion."
    ),
    input_schema=_report_schema("The structured markdown report"),
    execute=submit_report,
)

REPORT_BUG = ToolDescriptor(
    name="report_bug",
    description=(
        "Record one bug card. Mark it VERIFIED only when sandbox output demonstrates the bug; "
        "otherwise UNVERIFIED."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Short bug title"},
            "description": {"type": "string", "description": "What is wrong and why it matters"},
            "status": {"type": "string", "enum": list(BUG_STATUSES)},
            "severity": {"type": "string", "enum": list(BUG_SEVERITIES), "description": "Default medium"},
            "filePath": {"type": "string"},
            "startLine": {"type": "integer"},
            "endLine": {"type": "integer"},
            "reproduction": {"type": "string", "description": "Command or steps that reproduce the bug"},
            "evidence": {"type": "string", "description": "Relevant sandbox output"},
        },
        "required": ["title", "description", "status"],
    },
    execute=report_bug,
)

SUGGEST_CHANGE = ToolDescriptor(
    name="suggest_change",
    description="Post an inline review comment, optionally with a suggested replacement, on a changed line.",
    input_schema={
        "type": "object",
        "properties": {
            "filePath": {"type": "string"},
            "line": {"type": "integer"},
            "comment": {"type": "string"},
            "suggestion": {"type": "string", "description": "Replacement code for the line(s)"},
        },
        "required": ["filePath", "comment"],
    },
    execute=suggest_change,
)
