"""
Sub-agent report helpers: extraction from step history, quality checks,
condensing for the parent context and the evidence dump used by recovery
prompts.
"""

import json
import re
from typing import Any, Iterable, List, Optional

from tools.registry import is_tool_named

from .events import FinalResult, StepEvent, ToolCall, ToolCallResult

SUBMIT_REPORT_TOOL = "submit_report"

MAX_REPORT_CHARS = 8000
MAX_CONTEXT_CHARS = 1500
MAX_BULLETS_PER_SECTION = 3
REWRITE_CEILING_CHARS = 12000

EMPTY_REPORT = (
    "## Summary\nSub-agent returned an empty report.\n\n"
    "## Findings\n- No report content was produced.\n\n"
    "## Recommendations\n- Retry sub-agent execution with sufficient max steps.\n"
    "- Ensure the sub-agent reads diffs/files before summarizing.\n\n"
    "## Conclusion\nInsufficient data to assess changes."
)
NO_REPORT_OUTPUT = "Sub-agent completed execution but produced no report output"

_NO_OUTPUT_PHRASES = (
    "produced no report output",
    "no report output",
    "no performance analysis completed",
    "did not return reports",
)
_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+\S+", re.MULTILINE)
_BULLET_VALUE_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(.*)$")
_HEADER_RE = re.compile(r"^\s*#{1,6}\s+")
_STALLING_RE = re.compile(r"^\s*(now let me|let me)\b", re.IGNORECASE)
_TOOL_ARTIFACT_PREFIXES = ("<tool_call", "</tool_call", "<function=", "<parameter=")


def truncate_text(value: str, max_chars: int) -> str:
    """Keep 70% head and 30% tail around a truncation marker."""
    if len(value) <= max_chars:
        return value
    head_chars = max(0, int(max_chars * 0.7))
    tail_chars = max(0, max_chars - head_chars)
    head = value[:head_chars].rstrip()
    tail = value[-tail_chars:].lstrip() if tail_chars else ""
    return f"{head}\n\n... [truncated: {len(value)} chars total] ...\n\n{tail}"


def _parse_json_if_string(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if not trimmed.startswith(("{", "[")):
        return value
    try:
        return json.loads(trimmed)
    except ValueError:
        return value


def _report_from_value(value: Any) -> Optional[str]:
    parsed = _parse_json_if_string(value)
    if isinstance(parsed, str):
        return parsed.strip() or None
    if isinstance(parsed, dict) and isinstance(parsed.get("report"), str):
        return parsed["report"].strip() or None
    return None


def _report_in(calls: Iterable[ToolCall], results: Iterable[ToolCallResult]) -> Optional[str]:
    for call in calls:
        if is_tool_named(call.name, SUBMIT_REPORT_TOOL):
            report = _report_from_value(call.args)
            if report:
                return report
    for result in results:
        if is_tool_named(result.name, SUBMIT_REPORT_TOOL):
            report = _report_from_value(result.args)
            if report:
                return report
    return None


def extract_subagent_report(steps: Iterable[StepEvent]) -> Optional[str]:
    """The ``report`` argument of the first submit_report call in any step."""
    for step in steps:
        report = _report_in(step.tool_calls, step.tool_results)
        if report:
            return report
    return None


def _has_section(report: str, name: str) -> bool:
    return re.search(rf"^\s*#{{2,6}}\s*{name}\b", report, re.IGNORECASE | re.MULTILINE) is not None


def is_structured_report(report: str) -> bool:
    return all(_has_section(report, name)
               for name in ("Summary", "Findings", "Recommendations?", "Conclusion"))


def count_bullets(report: str) -> int:
    return len(_BULLET_RE.findall(report))


def _mentions_no_output(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in _NO_OUTPUT_PHRASES)


def should_rewrite_report(report: str) -> bool:
    """Quality gate for preflight reports. One rewrite at most; callers never loop on this."""
    trimmed = report.strip()
    if not trimmed or _mentions_no_output(trimmed):
        return True
    if not is_structured_report(trimmed) or count_bullets(trimmed) < 3:
        return True
    if _STALLING_RE.match(trimmed):
        return True
    return len(trimmed) > REWRITE_CEILING_CHARS


def _strip_tool_artifacts(text: str) -> str:
    return "\n".join(
        line for line in text.splitlines()
        if not line.strip().startswith(_TOOL_ARTIFACT_PREFIXES)
    )


def _section_lines(lines: List[str], header: str) -> List[str]:
    pattern = re.compile(rf"^\s*#{{2,6}}\s*{header}\b", re.IGNORECASE)
    start = next((i for i, line in enumerate(lines) if pattern.match(line)), None)
    if start is None:
        return []
    end = next((i for i in range(start + 1, len(lines)) if _HEADER_RE.match(lines[i])), len(lines))
    return lines[start + 1:end]


def _bullets(lines: List[str], limit: int) -> List[str]:
    values = []
    for line in lines:
        match = _BULLET_VALUE_RE.match(line)
        if match and match.group(1).strip():
            values.append(match.group(1).strip())
            if len(values) >= limit:
                break
    return values


def summarize_report_for_context(report: str) -> str:
    """Short digest of a report: top findings and recommendations, capped for the parent prompt."""
    cleaned = _strip_tool_artifacts(report).strip()
    if not cleaned:
        return ""
    lines = cleaned.splitlines()
    findings = _bullets(_section_lines(lines, "findings"), MAX_BULLETS_PER_SECTION)
    recommendations = _bullets(_section_lines(lines, "recommendations?"), MAX_BULLETS_PER_SECTION)

    blocks = []
    if findings:
        blocks.append("Key findings:\n" + "\n".join(f"- {item}" for item in findings))
    if recommendations:
        blocks.append("Key recommendations:\n" + "\n".join(f"- {item}" for item in recommendations))
    if not blocks:
        blocks.append("\n".join([line.strip() for line in lines if line.strip()][:10]))
    return truncate_text("\n\n".join(blocks), MAX_CONTEXT_CHARS)


def _condense(report: str) -> str:
    summary = summarize_report_for_context(report)
    if not summary:
        return truncate_text(report, MAX_REPORT_CHARS)

    findings: List[str] = []
    recommendations: List[str] = []
    target = findings
    for line in (raw.strip() for raw in summary.splitlines()):
        if line.lower().startswith("key findings:"):
            target = findings
        elif line.lower().startswith("key recommendations:"):
            target = recommendations
        elif line.startswith("- ") and line[2:].strip():
            target.append(line[2:].strip())

    findings_block = "\n".join(f"- {item}" for item in findings) or \
        "- No concrete findings could be extracted from the raw report."
    recommendations_block = "\n".join(f"- {item}" for item in recommendations) or \
        "- Ensure the sub-agent inspects diffs and includes concrete observations."
    return (
        "## Summary\nCondensed sub-agent report (raw output exceeded size limits).\n\n"
        f"## Findings\n{findings_block}\n\n"
        f"## Recommendations\n{recommendations_block}\n\n"
        "## Conclusion\nSee raw logs for full details if needed."
    )


def normalize_returned_report(report: str, preflight: bool) -> str:
    """Final shape of a sub-agent report before it reaches the parent."""
    trimmed = (report or "").strip()
    if not trimmed:
        return EMPTY_REPORT
    if not preflight:
        return trimmed
    if _mentions_no_output(trimmed):
        return (
            "## Summary\nSub-agent did not produce a usable report.\n\n"
            f"## Findings\n- Returned output: {truncate_text(trimmed, 800)}\n\n"
            "## Recommendations\n- Retry sub-agent execution.\n"
            "- Ensure the sub-agent reads diffs/files and ends by calling submit_report.\n\n"
            "## Conclusion\nInsufficient data to assess changes from sub-agent output."
        )
    if len(trimmed) <= MAX_REPORT_CHARS:
        return trimmed
    return _condense(trimmed)


def _evidence_value(value: Any, max_chars: int) -> str:
    if isinstance(value, str):
        return truncate_text(value, max_chars)
    return truncate_text(json.dumps(value, ensure_ascii=False, default=str), max_chars)


def format_recovery_evidence(result: FinalResult, max_chars: int = MAX_REPORT_CHARS) -> str:
    """Compact dump of what a session did, fed to the forced submit_report call."""
    blocks = []
    if result.finish_reason:
        blocks.append(f"finishReason: {result.finish_reason}")
    text = (result.text or "").strip()
    if text:
        blocks.append(f"text:\n{truncate_text(text, 2000)}")
    if result.tool_calls:
        lines = [f"- {c.name} {_evidence_value(c.args, 500)}" for c in result.tool_calls[:12]]
        blocks.append("toolCalls:\n" + "\n".join(lines))
    if result.tool_results:
        lines = [f"- {r.name} result={_evidence_value(r.result, 1200)}" for r in result.tool_results[:12]]
        blocks.append("toolResults:\n" + "\n".join(lines))

    step_blocks = []
    for number, step in enumerate(result.steps[-8:], start=1):
        lines = []
        if step.text.strip():
            lines.append(f"text: {truncate_text(step.text.strip(), 800)}")
        lines += [f"call: {c.name} {_evidence_value(c.args, 300)}" for c in step.tool_calls[:6]]
        lines += [f"result: {r.name} {_evidence_value(r.result, 600)}" for r in step.tool_results[:6]]
        if lines:
            step_blocks.append(f"step {number}:\n" + "\n".join(lines))
    if step_blocks:
        blocks.append("steps:\n" + "\n\n".join(step_blocks))

    return truncate_text("\n\n".join(blocks).strip(), max_chars)
