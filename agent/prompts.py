"""
Sub-agent prompt fragments and their composition.
Review-level prompts live in review.prompts; these only concern spawned sessions.
"""

PREFLIGHT_ROLES = (
    "Static Analysis Agent",
    "Logic Analysis Agent",
    "Memory & Performance Agent",
    "Security Analysis Agent",
)

_MOD_RULES = """Rules:
- Prefer reading diffs for the specified files (use read_diff) and then read_file for minimal needed context.
- Do not include tool-call blobs or raw JSON in your report.
- Keep the report focused and concise (prioritize top issues; avoid long narratives)."""

_MOD_PREFLIGHT_RULE = "- Do not run shell commands (bash/sandbox_exec) or write bug cards; focus on analysis only."

_MOD_REPORT_FORMAT = """CRITICAL REQUIREMENT: You MUST end your work by providing a comprehensive final report that includes:

## Summary
Brief overview of what was accomplished

## Findings
3-6 bullet points with concrete observations (include file paths where possible)

## Recommendations
Actionable next steps (bullet points)

## Conclusion
Final assessment and key takeaways

Submit the report to the main agent using the 'submit_report' tool."""

# Focus per preflight role, appended to the goal by review.prompts.preflight_goals()
ROLE_FOCUS = {
    "Static Analysis Agent": "types, API contracts, unused or unreachable code, error handling gaps",
    "Logic Analysis Agent": "control flow, edge cases, off-by-one errors, incorrect conditions, state handling",
    "Memory & Performance Agent": "resource leaks, unbounded growth, needless copies, hot-path complexity",
    "Security Analysis Agent": "injection, path traversal, secrets, authentication and authorization mistakes",
}


def subagent_prompt(goal: str, preflight: bool) -> str:
    rules = _MOD_RULES + ("\n" + _MOD_PREFLIGHT_RULE if preflight else "")
    return f"You are an autonomous sub-agent with the following goal: {goal}\n\n{rules}\n\n{_MOD_REPORT_FORMAT}"


def rewrite_prompt(goal: str, evidence: str, report: str) -> str:
    return (
        "Rewrite the report below into the required report format "
        "(## Summary, ## Findings, ## Recommendations, ## Conclusion, at least 3 bullet points). "
        "Do NOT invent facts. Only include observations that are explicitly present in the report or the evidence.\n\n"
        f"Goal:\n{goal}\n\n"
        f"Evidence (tool calls/results):\n{evidence or '(none)'}\n\n"
        f"Report to rewrite:\n{report}\n"
    )


def recovery_prompt(goal: str, evidence: str) -> str:
    return (
        "You did not call submit_report. Produce the final report now. Do NOT invent facts. "
        "Base findings/recommendations on the evidence. If evidence is insufficient, say so explicitly.\n\n"
        f"Goal:\n{goal}\n\n"
        f"Evidence (tool calls/results):\n{evidence or '(none)'}\n"
    )
