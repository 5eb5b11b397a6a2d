"""
Sub-agent spawning: one goal, a narrowed tool set, a structured report back.

Every spawn is an independent StepDriver session. Reports go through a
recovery ladder (submitted report, free text, one forced submit_report
call, canned report) and, for preflight goals, a single quality rewrite.
"""

import asyncio
import dataclasses
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from config import MAX_SUBAGENT_CONCURRENCY, review_config
from llm.base import GenerationConfig, ModelService
from tools._common import ToolContext
from tools.registry import ToolDescriptor, ToolRegistry
from tools.review_ops import SUBMIT_REPORT

from .events import AgentCancelled, ClientDisconnected, FinalResult
from .prompts import PREFLIGHT_ROLES, recovery_prompt, rewrite_prompt, subagent_prompt
from .report import (
    MAX_REPORT_CHARS,
    NO_REPORT_OUTPUT,
    extract_subagent_report,
    format_recovery_evidence,
    normalize_returned_report,
    should_rewrite_report,
    truncate_text,
)
from .steps import StepDriver

logger = logging.getLogger(__name__)

PREFLIGHT_RE = re.compile(r"^\s*\[(" + "|".join(re.escape(role) for role in PREFLIGHT_ROLES) + r")\]")
_ROLE_PREFIX_RE = re.compile(r"\[[^\]]+\]")

PREFLIGHT_TOOLS = ("read_file", "read_diff", "glob", "grep", "ls")
FULL_TOOLS = PREFLIGHT_TOOLS + ("fetch", "plan", "bash", "sandbox_exec", "thinking", "report_bug")


def is_preflight_goal(goal: str) -> bool:
    return PREFLIGHT_RE.match(goal or "") is not None


def goal_role_prefix(goal: str) -> Optional[str]:
    """First ``[Bracketed Role]`` token in a goal, brackets included."""
    match = _ROLE_PREFIX_RE.search(goal or "")
    return match.group(0) if match else None


@dataclass(frozen=True)
class SubAgentReport:
    goal: str
    report: str


class SubAgentCache:
    """Reports by goal, with a fallback match on the bracketed role prefix."""

    def __init__(self):
        self._reports: Dict[str, str] = {}

    def lookup(self, goal: str) -> Optional[str]:
        if goal in self._reports:
            return self._reports[goal]
        prefix = goal_role_prefix(goal)
        if prefix is None:
            return None
        for cached_goal, report in self._reports.items():
            if goal_role_prefix(cached_goal) == prefix:
                return report
        return None

    def store(self, goal: str, report: str) -> None:
        self._reports[goal] = report

    def __len__(self) -> int:
        return len(self._reports)


class SubAgentOrchestrator:
    """Spawns sub-agent sessions over a shared base registry."""

    def __init__(
        self,
        service: ModelService,
        base_tools: ToolRegistry,
        context: ToolContext,
        *,
        max_steps: Optional[int] = None,
        config: Optional[GenerationConfig] = None,
        step_delay_ms: Optional[int] = None,
        model_call_max_retries: Optional[int] = None,
        retry_max_delay_ms: Optional[int] = None,
        concurrency: Optional[int] = None,
        cache: Optional[SubAgentCache] = None,
    ):
        self.service = service
        self.base_tools = base_tools
        self.context = context
        self.max_steps = max_steps or review_config.subagent_max_steps
        self.config = config or GenerationConfig()
        self.step_delay_ms = review_config.step_delay_ms if step_delay_ms is None else step_delay_ms
        self.model_call_max_retries = (review_config.model_call_max_retries
                                       if model_call_max_retries is None else model_call_max_retries)
        self.retry_max_delay_ms = retry_max_delay_ms or review_config.retry_max_delay_ms
        self.concurrency = concurrency or review_config.effective_subagent_concurrency()
        self.cache = cache if cache is not None else SubAgentCache()

    def build_tools(self, goal: str) -> ToolRegistry:
        """submit_report plus the role-appropriate subset of the base tools."""
        names = PREFLIGHT_TOOLS if is_preflight_goal(goal) else FULL_TOOLS
        return self.base_tools.subset(names).with_tools(SUBMIT_REPORT)

    def _driver(self, registry: ToolRegistry, max_steps: int,
                config: Optional[GenerationConfig] = None) -> StepDriver:
        return StepDriver(
            self.service, registry, self.context,
            max_steps=max_steps,
            config=config or self.config,
            step_delay_ms=self.step_delay_ms,
            model_call_max_retries=self.model_call_max_retries,
            retry_max_delay_ms=self.retry_max_delay_ms,
            artifact_tool=SUBMIT_REPORT.name,
        )

    async def _forced_report(self, prompt: str) -> Optional[str]:
        """One step with submit_report as the only (and forced) tool."""
        forced = dataclasses.replace(self.config, tool_choice=SUBMIT_REPORT.name)
        result = await self._driver(ToolRegistry([SUBMIT_REPORT]), 1, forced).run(prompt)
        return extract_subagent_report(result.steps)

    async def _quality_gate(self, goal: str, report: str, result: FinalResult, preflight: bool) -> str:
        normalized = normalize_returned_report(report, preflight)
        if not preflight or not should_rewrite_report(normalized):
            return normalized
        logger.info(f"Rewriting low-quality sub-agent report for: {goal[:80]}")
        rewritten = await self._forced_report(rewrite_prompt(
            goal, format_recovery_evidence(result), truncate_text(normalized, MAX_REPORT_CHARS),
        ))
        return normalize_returned_report(rewritten or normalized, preflight)

    async def _run(self, goal: str) -> str:
        preflight = is_preflight_goal(goal)
        tools = self.build_tools(goal)
        logger.info(f"Spawning sub-agent ({len(tools)} tools) with goal: {goal}")
        result = await self._driver(tools, self.max_steps).run(subagent_prompt(goal, preflight))

        report = extract_subagent_report(result.steps)
        if report:
            return await self._quality_gate(goal, report, result, preflight)

        logger.warning(f"Sub-agent finished without submit_report (finish reason: {result.finish_reason})")
        if result.text.strip():
            return await self._quality_gate(goal, result.text, result, preflight)

        recovered = await self._forced_report(recovery_prompt(goal, format_recovery_evidence(result)))
        if recovered:
            return normalize_returned_report(recovered, preflight)
        return normalize_returned_report(NO_REPORT_OUTPUT, preflight=True)

    async def spawn(self, goal: str) -> str:
        """Report for ``goal``; failures come back as report text, never as exceptions."""
        cached = self.cache.lookup(goal)
        if cached is not None:
            logger.info(f"Reusing cached sub-agent report for: {goal[:80]}")
            return cached
        try:
            report = await self._run(goal)
        except (AgentCancelled, ClientDisconnected):
            raise
        except Exception as e:
            logger.error(f"Error in sub-agent execution: {e}", exc_info=True)
            return f"Error executing sub-agent: {e}"
        self.cache.store(goal, report)
        return report

    async def run_many(self, goals: Sequence[str], concurrency: Optional[int] = None) -> List[SubAgentReport]:
        """Run goals on a bounded worker pool; results keep the order of ``goals``."""
        if not goals:
            return []
        limit = max(1, min(concurrency or self.concurrency, MAX_SUBAGENT_CONCURRENCY, len(goals)))
        results: List[Optional[SubAgentReport]] = [None] * len(goals)
        next_index = 0

        async def worker() -> None:
            nonlocal next_index
            while next_index < len(goals):
                index = next_index
                next_index += 1
                results[index] = SubAgentReport(goals[index], await self.spawn(goals[index]))

        await asyncio.gather(*(worker() for _ in range(limit)))
        return [r for r in results if r is not None]

    def as_tool(self) -> ToolDescriptor:
        async def execute(args, context):
            return await self.spawn(args["goal"])

        return ToolDescriptor(
            name="spawn_subagent",
            description=(
                "Spawn a sub-agent with a specific goal that runs autonomously with the review tools "
                "and returns a structured report with findings and recommendations. Use it for "
                "token-heavy investigations. Prefix the goal with a [Role] tag."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "goal": {
                        "type": "string",
                        "description": "The goal, with as much context as the sub-agent needs",
                    },
                },
                "required": ["goal"],
            },
            execute=execute,
        )
