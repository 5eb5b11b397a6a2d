"""
Tool layer tests: registry lookup, argument validation, dispatch and the review tools.
"""

import asyncio
import shutil
import subprocess

import pytest

from changes import ChangedFilesError, PlatformOption, get_changed_files, get_diff_range, parse_changed_ranges
from tools.catalog import build_base_registry, build_review_registry
from tools.dispatch import execute_tool, validate_arguments
from tools.registry import ToolDescriptor, ToolRegistry, is_tool_named, normalize_tool_name
from tools.review_ops import BUG_RECORDED, SUBMIT_SUMMARY
from tools.sandbox import SandboxExecutor, approve_all


def _run(registry, name, args, context):
    return asyncio.run(execute_tool(registry, name, args, context))


def test_tool_name_normalization():
    assert normalize_tool_name("SubmitReport") == "submit_report"
    assert normalize_tool_name("submit-report") == "submit_report"
    assert normalize_tool_name("SUBMIT_REPORT") == "submit_report"
    assert normalize_tool_name("  read__file ") == "read_file"
    assert is_tool_named("submitreport", "submit_report")
    assert not is_tool_named("submit_summary", "submit_report")


def test_registry_lookup_and_snapshots():
    registry = build_base_registry()
    assert registry.names == [
        "read_file", "read_diff", "ls", "glob", "grep", "bash", "fetch", "plan", "thinking", "report_bug",
    ]
    assert registry.get("ReadFile").name == "read_file"
    assert "readfile" in registry
    assert registry.get("write_file") is None

    narrowed = registry.subset(["grep", "Grep", "missing"])
    assert narrowed.names == ["grep"]
    assert "bash" not in registry.without(["bash"])
    # Snapshots are independent
    assert len(registry) == 10


def test_review_registry_adds_platform_and_sandbox_tools(workspace, tmp_path):
    assert "suggest_change" in build_review_registry()
    assert "sandbox_exec" not in build_review_registry()

    executor = SandboxExecutor(str(workspace), confirm=approve_all, temp_root=str(tmp_path))
    registry = build_review_registry(executor)
    assert "sandbox_exec" in registry
    assert registry.with_tools(SUBMIT_SUMMARY).names[-1] == "submit_summary"


def test_duplicate_tool_names_are_rejected():
    echo = ToolDescriptor(name="echo", description="", input_schema={}, execute=lambda a, c: "x")
    with pytest.raises(ValueError):
        ToolRegistry([echo, ToolDescriptor(name="Echo", description="", input_schema={}, execute=echo.execute)])


def test_validate_arguments():
    schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "limit": {"type": "integer"},
            "status": {"type": "string", "enum": ["VERIFIED", "UNVERIFIED"]},
        },
        "required": ["path"],
    }
    assert validate_arguments(schema, {"path": "a.py", "limit": 5}) == []
    assert validate_arguments(schema, {}) == ["missing required argument 'path'"]
    assert validate_arguments(schema, {"path": "a.py", "limit": True}) == ["'limit' must be integer"]
    assert validate_arguments(schema, {"path": 3}) == ["'path' must be string"]
    assert validate_arguments(schema, {"path": "a", "status": "MAYBE"}) == [
        "'status' must be one of VERIFIED, UNVERIFIED"
    ]
    assert validate_arguments(schema, "nope") == ["arguments must be an object"]


def test_read_file_through_dispatch(tool_context):
    result = _run(build_base_registry(), "read_file", {"path": "app.py"}, tool_context)
    assert result.success
    assert result.output.startswith("[2 lines total]")
    assert "     2|    return a - b" in result.output

    window = _run(build_base_registry(), "read_file", {"path": "app.py", "offset": 2, "limit": 1}, tool_context)
    assert "(showing lines 2-2)" in window.output

    missing = _run(build_base_registry(), "read_file", {"path": "nope.py"}, tool_context)
    assert not missing.success
    assert missing.text == "Error: File not found: nope.py"


def test_dispatch_errors_come_back_as_results(tool_context):
    registry = build_base_registry()
    assert _run(registry, "write_file", {}, tool_context).text == "Error: Unknown tool: write_file"
    invalid = _run(registry, "read_file", {}, tool_context)
    assert invalid.text == "Error: Invalid arguments for read_file: missing required argument 'path'"

    def explode(args, context):
        raise RuntimeError("disk on fire")

    broken = ToolRegistry([ToolDescriptor(name="boom", description="", input_schema={}, execute=explode)])
    assert _run(broken, "boom", {}, tool_context).text == "Error: Tool error: disk on fire"

    def misuse(args, context):
        return len(None)

    buggy = ToolRegistry([ToolDescriptor(name="buggy", description="", input_schema={}, execute=misuse)])
    assert _run(buggy, "buggy", {}, tool_context).text.startswith("Error: Tool error: object of type")


def test_non_string_results_are_serialized(tool_context):
    registry = ToolRegistry([
        ToolDescriptor(name="data", description="", input_schema={}, execute=lambda a, c: {"ok": True}),
    ])
    assert _run(registry, "data", {}, tool_context).output == '{"ok": true}'


def test_listing_honors_gitignore(tool_context):
    listing = _run(build_base_registry(), "ls", {}, tool_context)
    assert "app.py" in listing.output
    assert "pkg/" in listing.output
    assert "build/" not in listing.output

    found = _run(build_base_registry(), "glob", {"pattern": "**/*.py"}, tool_context)
    assert "pkg/util.py" in found.output


def test_bash_refuses_dangerous_commands(tool_context, workspace):
    result = _run(build_base_registry(), "bash", {"command": "rm -rf /"}, tool_context)
    assert result.output.startswith("Error: Potentially dangerous command detected:")
    assert (workspace / "app.py").exists()


def test_review_tools(tool_context, provider):
    registry = build_review_registry()
    summary = _run(registry.with_tools(SUBMIT_SUMMARY), "submit_summary", {"report": "  "}, tool_context)
    assert summary.text == "Error: report must not be empty"

    bug = _run(registry, "report_bug", {"title": "t", "description": "d", "status": "VERIFIED"}, tool_context)
    assert bug.output == BUG_RECORDED

    posted = _run(registry, "suggest_change", {
        "filePath": "app.py", "line": 2, "comment": "Should add.", "suggestion": "    return a + b",
    }, tool_context)
    assert posted.output == "Suggestion posted on app.py:2"
    assert provider.comments == [{
        "body": "Should add.\n\n```suggestion\n    return a + b\n```", "file": "app.py", "line": 2,
    }]


def test_parse_changed_ranges():
    diff = (
        "@@ -1,0 +1,3 @@\n+a\n+b\n+c\n"
        "@@ -10 +12 @@\n-x\n+y\n"
        "@@ -20,2 +22,0 @@\n-gone\n-gone\n"
    )
    assert parse_changed_ranges(diff) == [(1, 3), (12, 12)]
    assert parse_changed_ranges("") == []


def test_github_range_requires_base_sha(monkeypatch):
    monkeypatch.delenv("BASE_SHA", raising=False)
    with pytest.raises(ChangedFilesError):
        get_diff_range(PlatformOption.GITHUB)
    monkeypatch.setenv("BASE_SHA", "abc")
    monkeypatch.setenv("GITHUB_SHA", "def")
    assert get_diff_range(PlatformOption.GITHUB) == ["abc...def"]
    assert get_diff_range(PlatformOption.LOCAL) == ["--cached"]


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_staged_changes_are_collected(workspace):
    def git(*args):
        subprocess.run(["git", *args], cwd=workspace, check=True, capture_output=True)

    git("init", "-q")
    git("-c", "user.email=t@example.com", "-c", "user.name=t", "add", ".")
    git("-c", "user.email=t@example.com", "-c", "user.name=t", "commit", "-q", "-m", "init")
    (workspace / "app.py").write_text("def add(a, b):\n    return a + b\n")
    git("add", "app.py")

    files = get_changed_files(PlatformOption.LOCAL, cwd=str(workspace / "pkg"))
    assert [f.file_name for f in files] == ["app.py"]
    assert files[0].changed_ranges == [(2, 2)]
    assert "a + b" in files[0].file_content
