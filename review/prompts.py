"""
Review prompt architecture.
The main instruction prompt is assembled from modules; the retry, recovery
and bug-verification prompts are small builders over the same vocabulary.
"""

import os
from typing import Iterable, List, Optional, Sequence

from agent.prompts import PREFLIGHT_ROLES, ROLE_FOCUS
from agent.subagent import SubAgentReport
from agent.report import summarize_report_for_context
from changes import ChangedFile

LANGUAGE_NAMES = {
    ".py": "Python",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".go": "Go",
    ".rs": "Rust",
    ".java": "Java",
    ".kt": "Kotlin",
    ".rb": "Ruby",
    ".php": "PHP",
    ".cs": "C#",
    ".c": "C",
    ".h": "C",
    ".cpp": "C++",
    ".hpp": "C++",
    ".swift": "Swift",
    ".sh": "Shell",
}

# ============================================================
# Instruction prompt modules
# ============================================================

_MOD_ROLE = """You are an expert {language} developer reviewing a pull request. Keep working until the review is complete; only stop when you are sure nothing is left to check.
Investigate with the tools you have: file contents, project structure and the impact of each change. Plan before every tool call and reflect on what the previous one returned. Review the way a careful human reviewer would."""

_MOD_CHANGES = """<changed_lines>
- A line number followed by "(deletion)" marks content that was removed with no replacement.
- Plain line numbers and ranges mark added or modified content, numbered in the new version of the file.
</changed_lines>"""

_MOD_RULES = """<review_rules>
- Functionality: make sure the change does not break existing behavior. Check with tools rather than guessing.
- Tests: judge whether the change is tested; point out missing coverage.
- Risk: rate each changed area from 1 (low) to 5 (high). Secrets or API keys in plain text are always a 5.
- Scope: only comment on added or removed lines. Do not praise; report problems.
- Brevity: keep feedback short and accurate. When similar issues repeat, mention the most critical one.
- Confidence: only comment when you are confident there is a problem.
- Suggestions: use suggest_change with a short, correct snippet in the language of the file.
- Language: write all feedback in {review_language}.
</review_rules>"""

_MOD_SANDBOX = """<sandbox_policy>
- Suspected runtime bugs and exploitable security issues must be checked with sandbox_exec before they are reported as confirmed. Every run needs user approval.
- Prefer one fast, targeted command per bug (python -m py_compile <file>, node --check <file>, a single test file).
- Never repeat the same sandbox_exec command. If it fails, times out or is inconclusive, mark the bug UNVERIFIED with the command and the output, then move on.
- A non-zero exit code is usually the proof you were looking for. Treat stdout/stderr as evidence and record the bug; do not retry because the command "failed".
- If approval is denied or reproduction is not feasible, mark the finding UNVERIFIED and say why.
</sandbox_policy>"""

_MOD_BUG_CARDS = """<bug_cards>
- Record every bug as its own card with report_bug, exactly once per bug: title, markdown description, severity, and status VERIFIED (confirmed in the sandbox) or UNVERIFIED (with the reason and the intended reproduction command).
- Bug details belong in cards, not in the summary. The summary gives a short overview of the change and may mention that bug cards were recorded.
</bug_cards>"""

_MOD_WORKFLOW = """<workflow>
1. Learn the project: use ls, glob and grep; look for rules files such as CLAUDE.md or .cursor/rules.
2. Read every changed file with read_diff, then read_file around the changed lines.
3. Assess intent and side effects. Use spawn_subagent for token-heavy investigations.
4. Verify suspected bugs with a single sandbox_exec each.
5. Record each bug with report_bug, then post fixes with suggest_change.
6. Finish by calling submit_summary with a brief summary of the pull request's purpose.
</workflow>"""

_MOD_FINISH = """You MUST call submit_summary. Any bug you found must already be recorded with report_bug before you do. After submit_summary, reply with a one-line confirmation only."""

CONTINUE_INSTRUCTION = (
    "\n\nPlease continue the task based on previous attempts and ensure you call submit_summary."
)


def language_name(file_name: str) -> str:
    return LANGUAGE_NAMES.get(os.path.splitext(file_name)[1].lower(), "software")


def _format_ranges(file: ChangedFile) -> str:
    if not file.changed_ranges:
        return "(deletion)"
    return ", ".join(str(start) if start == end else f"{start}-{end}" for start, end in file.changed_ranges)


def format_file_info(files: Sequence[ChangedFile], workspace_root: str) -> str:
    lines = [f"<changed_files root=\"{workspace_root}\">"]
    for f in files:
        lines.append(f"- {f.file_name}: lines {_format_ranges(f)}")
    lines.append("</changed_files>")
    return "\n".join(lines)


def construct_prompt(
    files: Sequence[ChangedFile],
    review_language: str,
    workspace_root: str,
    custom_instructions: Optional[str] = None,
) -> str:
    """The initial review prompt for a set of changed files."""
    language = language_name(files[0].file_name) if files else "software"
    parts = [
        _MOD_ROLE.format(language=language),
        _MOD_CHANGES,
        _MOD_RULES.format(review_language=review_language),
        _MOD_SANDBOX,
        _MOD_BUG_CARDS,
        _MOD_WORKFLOW,
        _MOD_FINISH,
    ]
    if custom_instructions:
        parts.append(f"<custom_instructions>\n{custom_instructions}\n</custom_instructions>")
    parts.append(format_file_info(files, workspace_root))
    return "\n\n".join(parts)


# ============================================================
# Preflight
# ============================================================

def preflight_goals(files: Sequence[ChangedFile]) -> List[str]:
    names = ", ".join(f.file_name for f in files) or "(none)"
    return [
        f"[{role}] Analyze the changes in: {names}. Focus on {ROLE_FOCUS[role]}."
        for role in PREFLIGHT_ROLES
    ]


def preflight_section(reports: Iterable[SubAgentReport]) -> str:
    blocks = []
    for item in reports:
        digest = summarize_report_for_context(item.report)
        if digest:
            blocks.append(f"### {item.goal.split(']')[0].lstrip('[')}\n{digest}")
    if not blocks:
        return ""
    return "\n\n<preflight_reports>\n" + "\n\n".join(blocks) + "\n</preflight_reports>"


# ============================================================
# Retry and recovery
# ============================================================

def attempt_context(attempt: int, tool_results: Iterable[str], final_text: str) -> str:
    body = "\n".join(tool_results)
    final = f"\nFinal Text: {final_text}" if final_text else ""
    return f"\n\n--- Attempt {attempt} Context ---\n{body}{final}\n--- End Attempt {attempt} Context ---"


def recovery_summary_prompt(
    files: Sequence[ChangedFile],
    evidence: str,
    review_language: str,
    max_file_chars: int,
) -> str:
    """Single no-tool call used when a session loops or ends without a usable summary."""
    budget = max_file_chars
    file_blocks = []
    for f in files:
        if budget <= 0:
            file_blocks.append(f"=== {f.file_name} (omitted: size limit) ===")
            continue
        content = f.file_content[:budget]
        budget -= len(content)
        suffix = "\n... [truncated]" if len(content) < len(f.file_content) else ""
        file_blocks.append(f"=== {f.file_name} ===\n{content}{suffix}")
    return (
        "The automated review session stopped before producing a final summary. "
        "Write the final code review now from the material below. Do not call tools and do not ask "
        "for approval. Do NOT invent facts: state what the evidence shows, and mark anything you could "
        f"not confirm as UNVERIFIED. Write in {review_language}.\n\n"
        "Structure: a short overview of the change, then the concrete problems found "
        "(file, line, why it matters), then recommendations.\n\n"
        f"Sandbox evidence:\n{evidence or '(none captured)'}\n\n"
        "Changed files:\n" + "\n\n".join(file_blocks)
    )


# ============================================================
# Bug verification
# ============================================================

def bug_verification_prompt(candidate: str, review_language: str) -> str:
    return (
        "You are verifying one suspected bug from a code review.\n\n"
        f"Suspected bug:\n{candidate}\n\n"
        "Rules:\n"
        "- You may run at most ONE sandbox_exec command. Pick the smallest command that would "
        "reproduce or falsify the bug.\n"
        "- Then call report_bug exactly once. Use status VERIFIED only if the sandbox output "
        "demonstrates the bug; otherwise UNVERIFIED with the reason and the command you would run.\n"
        "- Include the command in 'reproduction' and the relevant output in 'evidence'.\n"
        f"- Write the card in {review_language}."
    )


def bug_extraction_prompt(review_text: str, review_language: str) -> str:
    return (
        "The code review below describes bugs in prose. Extract every distinct bug and record each "
        "one with report_bug. You may run at most ONE sandbox_exec command across all of them. "
        "Use status VERIFIED only when sandbox output demonstrates the bug; otherwise UNVERIFIED. "
        f"Write the cards in {review_language}.\n\n"
        f"Review:\n{review_text}"
    )
