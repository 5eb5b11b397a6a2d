"""External and miscellaneous tools: bash, fetch, plan, thinking."""

import os
import re
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from backend import Backend, LocalBackend
from llm.fetch_retry import RetryingFetcher
from tools._common import ToolResult, find_dangerous_command

logger = logging.getLogger(__name__)

BASH_DENY_LIST = ("rm -rf", "mkfs", "dd", ":(){", "wget", "curl")
_MAX_BASH_OUTPUT_CHARS = int(os.getenv("MAX_BASH_OUTPUT_CHARS", "20000"))


def truncate_head_tail(text: str, max_chars: int, head_ratio: float = 0.8) -> str:
    """Keep the start and end of long output with a marker in between."""
    if len(text) <= max_chars:
        return text
    head_chars = int(max_chars * head_ratio)
    tail_chars = max_chars - head_chars
    tail = text[-tail_chars:] if tail_chars > 0 else ""
    return (
        f"{text[:head_chars]}\n\n... [output truncated: {len(text)} chars total, "
        f"showing {head_chars}+{tail_chars}] ...\n\n{tail}"
    )


def run_command(command: str, cwd: str = ".", timeout: int = 10000,
                backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Execute a shell command in the workspace. ``timeout`` is in milliseconds."""
    if not (command or "").strip():
        return ToolResult(success=False, output="", error="command is required")
    dangerous = find_dangerous_command(command, BASH_DENY_LIST)
    if dangerous:
        return ToolResult(success=True, output=f"Error: Potentially dangerous command detected: {dangerous}")

    b = backend or LocalBackend(working_directory)
    timeout_secs = max(1, int(timeout or 10000) // 1000)
    try:
        stdout, stderr, rc = b.run_command(command, cwd=cwd or ".", timeout=timeout_secs)
    except ValueError as e:
        return ToolResult(success=False, output="", error=str(e))
    except Exception as e:
        return ToolResult(success=False, output="", error=f"Error executing command: {e}")

    if rc == -1 and "timed out" in stderr:
        return ToolResult(success=True, output=f"Command timed out after {timeout}ms")

    output = ""
    if stdout:
        output += f"STDOUT:\n{stdout}\n"
    if stderr:
        output += f"STDERR:\n{stderr}\n"
    if rc != 0:
        output = f"[exit code: {rc}]\n{output}"
    if not output:
        output = "Command executed successfully with no output."
    return ToolResult(success=True, output=truncate_head_tail(output, _MAX_BASH_OUTPUT_CHARS))


# --- fetch ---
_FETCH_MAX_BYTES = 500_000
_FETCH_DEFAULT_TIMEOUT = 15
_fetcher: Optional[RetryingFetcher] = None


def _get_fetcher() -> RetryingFetcher:
    global _fetcher
    if _fetcher is None:
        _fetcher = RetryingFetcher(max_retries=2)
    return _fetcher


def fetch_url(url: str, timeout: Optional[int] = None, **kw: Any) -> ToolResult:
    """Fetch content from a URL via HTTP GET. Returns plain text; HTML is stripped roughly."""
    url = (url or "").strip()
    if not url:
        return ToolResult(success=False, output="", error="url is required")
    if not url.startswith(("http://", "https://")):
        return ToolResult(success=False, output="", error="url must start with http:// or https://")
    try:
        to = min(60, max(1, timeout or _FETCH_DEFAULT_TIMEOUT))
        resp = _get_fetcher().get(url, timeout=to, headers={"User-Agent": "BedrockReview/1.0"})
    except requests.RequestException as e:
        logger.warning(f"fetch failed for {url}: {e}")
        return ToolResult(success=False, output="", error=str(e))

    if resp.status_code >= 400:
        return ToolResult(success=False, output="", error=f"HTTP {resp.status_code} fetching {url}")

    body = resp.content[:_FETCH_MAX_BYTES]
    truncated = len(resp.content) > _FETCH_MAX_BYTES
    text = body.decode(resp.encoding or "utf-8", errors="replace")
    if "html" in resp.headers.get("content-type", ""):
        text = re.sub(r"<script[^>]*>[\s\S]*?</script>", "", text, flags=re.IGNORECASE)
        text = re.sub(r"<style[^>]*>[\s\S]*?</style>", "", text, flags=re.IGNORECASE)
        text = re.sub(r"<[^>]+>", " ", text)
        text = re.sub(r"\s+", " ", text).strip()
    if truncated:
        text += "\n\n[Content truncated: response was larger than 500KB.]"
    return ToolResult(success=True, output=text[:100_000])


# --- plan ---
PLAN_FILENAME = "plan.md"
_LOG_HEADER = "## Execution Log"
_NOTES_HEADER = "## Notes"
_SECTION_HEADERS = ("## Steps", _LOG_HEADER, _NOTES_HEADER)
PLAN_STATUSES = ("pending", "in_progress", "completed", "blocked")


def _extract_section(content: str, header: str) -> Optional[str]:
    lines = (content or "").split("\n")
    try:
        start = next(i for i, line in enumerate(lines) if line.strip() == header) + 1
    except StopIteration:
        return None
    end = next((i for i in range(start, len(lines)) if lines[i].strip() in _SECTION_HEADERS), len(lines))
    section = "\n".join(lines[start:end]).strip()
    return section or None


def _append_section(current: Optional[str], addition: Optional[str]) -> Optional[str]:
    addition = (addition or "").strip()
    if not addition:
        return current
    return f"{current}\n\n{addition}" if current else addition


def _render_plan(steps: List[Dict[str, str]], log: Optional[str], note: Optional[str]) -> str:
    lines = ["# Plan", "", f"Updated: {datetime.now(timezone.utc).isoformat()}", "", "## Steps"]
    if not steps:
        lines.append("- [pending] <no steps provided>")
    for entry in steps:
        lines.append(f"- [{entry.get('status', 'pending')}] {entry.get('step', '')}")
    if log:
        lines += ["", _LOG_HEADER, log]
    if note:
        lines += ["", _NOTES_HEADER, note]
    return "\n".join(lines) + "\n"


def update_plan(steps: List[Dict[str, str]], logEntry: Optional[str] = None, note: Optional[str] = None,
                backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Rewrite plan.md with current step statuses, appending to its log and notes."""
    for i, entry in enumerate(steps):
        if not isinstance(entry, dict) or "step" not in entry:
            return ToolResult(success=False, output="", error=f"steps[{i}] must have a 'step'")
        if entry.get("status", "pending") not in PLAN_STATUSES:
            return ToolResult(success=False, output="", error=f"steps[{i}] invalid status: {entry.get('status')}")

    root = (backend.working_directory if backend else os.path.abspath(working_directory))
    plan_path = os.path.join(root, PLAN_FILENAME)
    try:
        existing = ""
        if os.path.isfile(plan_path):
            with open(plan_path, "r", encoding="utf-8") as f:
                existing = f.read()
        merged_log = _append_section(_extract_section(existing, _LOG_HEADER), logEntry)
        merged_notes = _append_section(_extract_section(existing, _NOTES_HEADER), note)
        with open(plan_path, "w", encoding="utf-8") as f:
            f.write(_render_plan(steps, merged_log, merged_notes))
    except OSError as e:
        return ToolResult(success=False, output="", error=f"Error updating plan at '{plan_path}': {e}")
    return ToolResult(success=True, output=f"Plan updated at {plan_path}")


def thinking(thought: str, **kw: Any) -> ToolResult:
    """Scratchpad: echo the thought back so it lands in the transcript."""
    return ToolResult(success=True, output=thought or "")
