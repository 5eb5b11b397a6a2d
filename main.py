"""
Bedrock Review - reviews the changed files of a git repository with a tool-using model.
Terminal front end built with Rich.
"""

import asyncio
import argparse
import dataclasses
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
load_dotenv()

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape as rich_escape
from rich.prompt import Confirm
from rich.table import Table

from agent.events import AgentEvent
from changes import ChangedFilesError, PlatformOption, get_changed_files
from config import app_config, model_config, review_config
from llm import ModelError, create_model_service, default_generation_config
from providers import get_platform_provider
from review.orchestrator import ReviewAborted, ReviewOrchestrator, ReviewOutcome
from tools.sandbox import SandboxApprovalRequest, SandboxDecision, deny_non_interactive

logger = logging.getLogger(__name__)

console = Console()

SEVERITY_COLORS = {"critical": "#f85149", "high": "#f0883e", "medium": "#e3b341", "low": "#8b949e"}
STATUS_COLORS = {"VERIFIED": "#f85149", "UNVERIFIED": "#8b949e"}


def _short(text: str, limit: int = 100) -> str:
    text = " ".join(str(text).split())
    return text if len(text) <= limit else text[:limit - 1] + "…"


# ============================================================
# Event rendering
# ============================================================

async def render_event(event: AgentEvent) -> None:
    data = event.data or {}

    if event.type == "status":
        console.print(f"   [#58a6ff]● {rich_escape(event.content)}[/#58a6ff]")

    elif event.type == "step":
        step = data.get("step", {})
        phase = data.get("phase", "review")
        for call in step.get("toolCalls", []):
            name = call.get("toolName", "?")
            args = call.get("args", {}) or {}
            if name == "sandbox_exec":
                desc = f"[bold #e3b341]$ {rich_escape(_short(args.get('command', '?')))}[/bold #e3b341]"
            elif name in ("read_file", "ls"):
                desc = f"[bold]{rich_escape(str(args.get('path', '.')))}[/bold]"
            elif name in ("grep", "glob"):
                desc = f"[bold]{rich_escape(str(args.get('pattern', '?')))}[/bold]"
            elif name == "spawn_subagent":
                desc = f"[#8957e5]{rich_escape(_short(args.get('goal', '?'), 80))}[/#8957e5]"
            else:
                desc = ""
            console.print(f"   [#6e7681]{phase}[/#6e7681] [#3fb950]{rich_escape(name)}[/#3fb950] {desc}")

    elif event.type == "subagent_preflight":
        if data.get("state") == "start":
            console.print(f"   [#8957e5]○ Preflight: {data.get('total', 0)} sub-agent(s)[/#8957e5]")
        else:
            console.print(f"   [#8957e5]✓ Preflight done ({data.get('total', 0)} report(s))[/#8957e5]")

    elif event.type == "sandbox_run_start":
        console.print(f"   [#e3b341]▶ sandbox {rich_escape(data.get('sandboxCwd', ''))}[/#e3b341]")

    elif event.type == "sandbox_run_output":
        color = "#f85149" if data.get("stream") == "stderr" else "#6e7681"
        for line in str(data.get("text", "")).splitlines():
            console.print(f"     [{color}]{rich_escape(line)}[/{color}]")

    elif event.type == "sandbox_run_end":
        status = data.get("status", "?")
        color = "#3fb950" if status == "success" else "#f0883e"
        console.print(
            f"   [{color}]■ sandbox {rich_escape(str(status))}"
            f" (exit {data.get('exitCode')}, {data.get('durationMs', 0)}ms)[/{color}]"
        )

    elif event.type == "error":
        console.print(f"\n   [bold #f85149]✗ {rich_escape(event.content)}[/bold #f85149]")


async def confirm_in_terminal(request: SandboxApprovalRequest) -> SandboxDecision:
    console.print(
        f"\n   [bold #e3b341]Sandbox request[/bold #e3b341] "
        f"[#6e7681](cwd {rich_escape(request.cwd)}, timeout {request.timeout_ms}ms)[/#6e7681]"
    )
    console.print(f"   [bold]$ {rich_escape(request.command)}[/bold]")
    approved = await asyncio.to_thread(Confirm.ask, "   Run it in a throwaway copy of the repository?", default=False)
    return SandboxDecision(approved=approved, reason=None if approved else "Denied by user.")


def print_outcome(outcome: ReviewOutcome) -> None:
    console.print()
    console.rule(f"[bold]Review ({outcome.state.value}, {outcome.attempts} attempt(s))[/bold]")
    console.print(Markdown(outcome.result or "_No review text._"))

    if outcome.bug_cards:
        table = Table(title="Bugs", show_lines=True)
        table.add_column("Status")
        table.add_column("Severity")
        table.add_column("Title")
        table.add_column("Location")
        for card in outcome.bug_cards:
            location = card.file_path or ""
            if card.file_path and card.start_line:
                location += f":{card.start_line}"
            status_color = STATUS_COLORS.get(card.status, "#8b949e")
            severity_color = SEVERITY_COLORS.get(card.severity, "#8b949e")
            table.add_row(
                f"[{status_color}]{card.status}[/{status_color}]",
                f"[{severity_color}]{card.severity}[/{severity_color}]",
                rich_escape(card.title),
                rich_escape(location),
            )
        console.print(table)

    usage = outcome.usage
    console.print(
        f"[#6e7681]{usage.input_tokens} input + {usage.output_tokens} output tokens"
        f"{' (recovered)' if outcome.recovered else ''}[/#6e7681]"
    )


async def run_review(directory: str, platform: PlatformOption, model_string: Optional[str],
                     max_steps: Optional[int], language: Optional[str], interactive: bool) -> ReviewOutcome:
    files = await asyncio.to_thread(get_changed_files, platform, directory)
    if not files:
        raise ChangedFilesError("No changed files found. Please stage some changes.")
    console.print(f"   [#6e7681]{len(files)} changed file(s):[/#6e7681] "
                  f"{rich_escape(', '.join(f.file_name for f in files))}")

    overrides = {}
    if max_steps:
        overrides["max_steps"] = max_steps
    if language:
        overrides["review_language"] = language
    config = dataclasses.replace(review_config, **overrides)

    orchestrator = ReviewOrchestrator(
        create_model_service(model_string),
        get_platform_provider(platform.value),
        files,
        working_directory=directory,
        config=config,
        generation=default_generation_config(),
        emit=render_event,
        confirm=confirm_in_terminal if interactive else deny_non_interactive,
    )
    return await orchestrator.run()


# ============================================================
# Entry Point
# ============================================================

def main():
    parser = argparse.ArgumentParser(
        description="Bedrock Review - code review agent for changed files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                         Review staged/unstaged changes here
  python main.py -d ~/my-repo            Review another repository
  python main.py -m openai:gpt-4o        Use an OpenAI-compatible model
        """,
    )
    parser.add_argument(
        "-d", "--directory",
        default=app_config.working_directory,
        help="Repository to review (default: current directory)",
    )
    parser.add_argument("-m", "--model", default=None, help="provider:model-id (default: REVIEW_MODEL)")
    parser.add_argument("--max-steps", type=int, default=None, help="Steps per attempt")
    parser.add_argument("--language", default=None, help="Review language (e.g. English, zh)")
    parser.add_argument(
        "--platform",
        choices=[p.value for p in PlatformOption],
        default=app_config.platform,
        help="Where the changes come from (default: local)",
    )
    parser.add_argument("--no-thinking", action="store_true", help="Disable extended thinking")
    parser.add_argument("--yes", action="store_true", help="Approve every sandbox command")

    args = parser.parse_args()

    if args.no_thinking:
        model_config.enable_thinking = False
    if args.yes:
        review_config.sandbox_auto_approve = True

    logging.basicConfig(
        level=app_config.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    working_dir = os.path.abspath(os.path.expanduser(args.directory))
    if not os.path.isdir(working_dir):
        print(f"Error: {working_dir} is not a directory")
        sys.exit(1)

    console.print(f"\n  [bold]{app_config.title}[/bold]  [#6e7681]{rich_escape(working_dir)}[/#6e7681]\n")
    try:
        outcome = asyncio.run(run_review(
            working_dir,
            PlatformOption(args.platform),
            args.model,
            args.max_steps,
            args.language,
            interactive=sys.stdin.isatty(),
        ))
    except (ChangedFilesError, ReviewAborted, ModelError) as e:
        console.print(f"\n   [bold #f85149]✗ {rich_escape(str(e))}[/bold #f85149]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n   [#6e7681]Interrupted[/#6e7681]")
        sys.exit(130)

    print_outcome(outcome)


if __name__ == "__main__":
    main()
