"""Search and discovery tools: grep, glob, ls."""

import os
import pathlib
import logging
from typing import Any, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult
from tools.gitignore import (
    _load_gitignore,
    _is_ignored,
    _ALWAYS_SKIP_DIRS,
    _ALWAYS_SKIP_EXTENSIONS,
)

logger = logging.getLogger(__name__)

_MAX_MATCH_LINES = 100
_MAX_GLOB_RESULTS = 200


def grep(pattern: str, path: Optional[str] = None, include: Optional[str] = None,
         backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Search for a regex pattern using ripgrep (or grep fallback)."""
    if not (pattern or "").strip():
        return ToolResult(success=False, output="", error="pattern is required")
    try:
        b = backend or LocalBackend(working_directory)
        result = b.search(pattern, path or ".", include=include, cwd=".")
        if not result:
            return ToolResult(success=True, output="No matches found.")

        root = b.working_directory.rstrip(os.sep) + os.sep
        lines = [line[len(root):] if line.startswith(root) else line for line in result.split("\n")]
        if len(lines) > _MAX_MATCH_LINES:
            extra = len(lines) - _MAX_MATCH_LINES
            lines = lines[:_MAX_MATCH_LINES] + ["", f"... [{extra} more matches truncated]"]
        return ToolResult(success=True, output="\n".join(lines))
    except Exception as e:
        if "timed out" in str(e).lower():
            return ToolResult(success=False, output="", error="Search timed out")
        return ToolResult(success=False, output="", error=str(e))


def list_directory(path: Optional[str] = None,
                   backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """List files and directories at a path, respecting .gitignore."""
    try:
        b = backend or LocalBackend(working_directory)
        target = path or "."
        if not b.is_dir(target):
            return ToolResult(success=False, output="", error=f"Not a directory: {target}")

        gi = _load_gitignore(b.working_directory)
        lines = []
        for e in b.list_dir(target):
            name = e["name"]
            is_dir = e["type"] == "directory"
            rel = os.path.join(target, name) if target != "." else name
            if _is_ignored(rel, name, is_dir, gi):
                continue
            if is_dir:
                lines.append(f"  {name}/")
            else:
                lines.append(f"  {name} ({_format_size(e.get('size', 0))})")

        if not lines:
            return ToolResult(success=True, output=f"{target}/ (empty)")
        return ToolResult(success=True, output=f"{target}/\n" + "\n".join(lines))
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def glob_find(pattern: str,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Find files matching a glob pattern, respecting .gitignore."""
    if not (pattern or "").strip():
        return ToolResult(success=False, output="", error="pattern is required")
    try:
        b = backend or LocalBackend(working_directory)
        gi = _load_gitignore(b.working_directory)

        matches = []
        for m in b.glob_find(pattern, "."):
            parts = pathlib.PurePath(m).parts
            if any(p in _ALWAYS_SKIP_DIRS for p in parts):
                continue
            _, ext = os.path.splitext(m)
            if ext in _ALWAYS_SKIP_EXTENSIONS:
                continue
            if gi and gi.match_file(m):
                continue
            matches.append(m)

        if not matches:
            return ToolResult(success=True, output="No files found matching pattern.")

        output = f"Found {len(matches)} match(es):\n" + "\n".join(f"  {m}" for m in matches[:_MAX_GLOB_RESULTS])
        if len(matches) > _MAX_GLOB_RESULTS:
            output += f"\n  ... [{len(matches) - _MAX_GLOB_RESULTS} more]"
        return ToolResult(success=True, output=output)
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GB"
