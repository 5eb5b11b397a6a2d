"""File tools: read_file and read_diff."""

import logging
import subprocess
from typing import Any, List, Optional

from backend import Backend, LocalBackend
from changes import ChangedFilesError, PlatformOption, get_diff_range
from tools._common import ToolResult

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 500
_MAX_DIFF_CHARS = 40000


def _extract_structure(lines: List[str]) -> str:
    """Extract a structural summary from source code: imports, classes, functions."""
    structure = []
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith(("import ", "from ")) and i < 50:
            structure.append(f"{i+1:6}|{line.rstrip()}")
        elif stripped.startswith(("class ", "def ", "async def ", "function ", "export ")):
            structure.append(f"{i+1:6}|{line.rstrip()}")
    return "\n".join(structure)


def _require_path(path: str, name: str = "path") -> Optional[ToolResult]:
    """Return an error ToolResult if path is empty/whitespace; else None."""
    if not (path or "").strip():
        return ToolResult(success=False, output="", error=f"{name} is required")
    return None


def read_file(path: str, offset: Optional[int] = None, limit: Optional[int] = None,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Read the contents of a file. Returns line-numbered content."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}")

        lines = b.read_file(path).splitlines(keepends=True)
        total_lines = len(lines)

        if offset is not None or limit is not None:
            start = max((offset or 1) - 1, 0)
            end = start + (limit or total_lines)
            selected = lines[start:end]
            line_start = start + 1
            numbered = [f"{line_start + i:6}|{line.rstrip()}" for i, line in enumerate(selected)]
            header = f"[{total_lines} lines total] (showing lines {line_start}-{line_start + len(selected) - 1})"
            return ToolResult(success=True, output=header + "\n" + "\n".join(numbered))

        if total_lines <= _MAX_FULL_READ_LINES:
            numbered = [f"{i+1:6}|{line.rstrip()}" for i, line in enumerate(lines)]
            return ToolResult(success=True, output=f"[{total_lines} lines total]\n" + "\n".join(numbered))

        # Large file: structural overview + head + tail
        head_n, tail_n = 80, 40
        omitted = total_lines - head_n - tail_n
        head = [f"{i+1:6}|{lines[i].rstrip()}" for i in range(head_n)]
        tail = [f"{total_lines - tail_n + i + 1:6}|{lines[total_lines - tail_n + i].rstrip()}" for i in range(tail_n)]
        parts = [
            f"[{total_lines} lines total; showing overview + head + tail]",
            "[Use offset/limit to read specific sections]", "",
            "-- structure --", _extract_structure(lines), "",
            f"-- first {head_n} lines --", "\n".join(head),
            f"\n  ... ({omitted} lines omitted; use offset={head_n + 1} limit=N to read more) ...\n",
            f"-- last {tail_n} lines --", "\n".join(tail),
        ]
        return ToolResult(success=True, output="\n".join(parts))
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def read_diff(path: str, platform: str = "local", backend: Optional[Backend] = None,
              working_directory: str = ".", **kw: Any) -> ToolResult:
    """Show the diff under review for one file."""
    err = _require_path(path)
    if err:
        return err
    b = backend or LocalBackend(working_directory)
    try:
        diff_range = get_diff_range(PlatformOption(platform))
    except (ChangedFilesError, ValueError) as e:
        return ToolResult(success=False, output="", error=str(e))
    try:
        proc = subprocess.run(
            ["git", "diff", "--diff-filter=AMRT", "-U3", *diff_range, "--", path],
            cwd=b.working_directory, capture_output=True, text=True, errors="replace", timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return ToolResult(success=False, output="", error=f"git diff failed: {e}")
    if proc.returncode != 0:
        return ToolResult(success=False, output="", error=f"git diff failed: {proc.stderr.strip()}")

    diff = proc.stdout
    if not diff.strip():
        return ToolResult(success=True, output=f"No changes found for {path}.")
    if len(diff) > _MAX_DIFF_CHARS:
        diff = diff[:_MAX_DIFF_CHARS] + f"\n\n... [diff truncated, {len(proc.stdout)} chars total]"
    return ToolResult(success=True, output=diff)
