"""
Bug-verification pass.

Runs after the main review when its summary talks about bugs but no bug
cards were recorded. Each candidate statement gets its own short session
with exactly two tools: a single-use sandbox_exec and report_bug.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agent.events import AgentCancelled, ClientDisconnected, StepEvent
from agent.steps import StepDriver
from config import ReviewConfig, review_config
from llm.base import GenerationConfig, ModelService
from tools._common import ToolContext
from tools.registry import ToolRegistry
from tools.review_ops import REPORT_BUG
from tools.sandbox import SandboxExecutor, create_sandbox_tool, single_use

from .classifiers import extract_bug_candidates, has_bug_vocabulary, is_meta_summary, looks_like_bug_narrative
from .prompts import bug_extraction_prompt, bug_verification_prompt

logger = logging.getLogger(__name__)

FALLBACK_EVIDENCE = "Automatic verification did not record a result for this finding."


@dataclass
class BugCard:
    title: str
    description: str
    status: str = "UNVERIFIED"
    severity: str = "medium"
    file_path: Optional[str] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    reproduction: Optional[str] = None
    evidence: Optional[str] = None
    tool_call_id: Optional[str] = None
    synthesized: bool = False

    @classmethod
    def from_args(cls, args: Dict[str, Any], tool_call_id: Optional[str] = None) -> "BugCard":
        return cls(
            title=str(args.get("title", "")),
            description=str(args.get("description", "")),
            status=args.get("status") or "UNVERIFIED",
            severity=args.get("severity") or "medium",
            file_path=args.get("filePath"),
            start_line=args.get("startLine"),
            end_line=args.get("endLine"),
            reproduction=args.get("reproduction"),
            evidence=args.get("evidence"),
            tool_call_id=tool_call_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "severity": self.severity,
            "filePath": self.file_path,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "reproduction": self.reproduction,
            "evidence": self.evidence,
            "toolCallId": self.tool_call_id,
            "synthesized": self.synthesized,
        }


def synthesize_card(candidate: str) -> BugCard:
    title = candidate if len(candidate) <= 80 else candidate[:77].rstrip() + "..."
    return BugCard(title=title, description=candidate, status="UNVERIFIED",
                   evidence=FALLBACK_EVIDENCE, synthesized=True)


class BugVerifier:
    """Verifies bug statements from a finished review and records them as cards.

    ``record_step`` receives every step of every verification session; it is
    the caller's job to turn report_bug calls into cards (the orchestrator
    does this for all phases alike). ``cards_recorded`` tells the verifier how
    many cards exist so far.
    """

    def __init__(
        self,
        service: ModelService,
        context: ToolContext,
        executor: SandboxExecutor,
        record_step: Callable[[StepEvent], Awaitable[None]],
        cards_recorded: Callable[[], int],
        *,
        config: Optional[ReviewConfig] = None,
        generation: Optional[GenerationConfig] = None,
    ):
        self.service = service
        self.context = context
        self.executor = executor
        self.record_step = record_step
        self.cards_recorded = cards_recorded
        self.config = config or review_config
        self.generation = generation or GenerationConfig()

    def _tools(self) -> ToolRegistry:
        # A fresh wrapper per session: one sandbox run per verification
        return ToolRegistry([single_use(create_sandbox_tool(self.executor)), REPORT_BUG])

    async def _session(self, prompt: str, max_steps: int) -> None:
        driver = StepDriver(
            self.service, self._tools(), self.context,
            max_steps=max_steps,
            config=self.generation,
            step_delay_ms=self.config.step_delay_ms,
            model_call_max_retries=self.config.model_call_max_retries,
            retry_max_delay_ms=self.config.retry_max_delay_ms,
            artifact_tool=REPORT_BUG.name,
        )
        try:
            await driver.run(prompt, on_step=self.record_step)
        except (AgentCancelled, ClientDisconnected):
            raise
        except Exception as e:
            logger.warning(f"Bug verification session failed: {e}", exc_info=True)

    async def run(self, review_text: str) -> List[BugCard]:
        """Run the pass; returns only the synthesized fallback cards (recorded cards arrive via steps)."""
        if self.cards_recorded() > 0:
            logger.info("Bug cards already recorded during the review; skipping verification pass")
            return []
        if not has_bug_vocabulary(review_text) or is_meta_summary(review_text):
            return []

        candidates = extract_bug_candidates(review_text, self.config.bug_candidates_max)
        max_steps = self.config.bug_verify_max_steps
        language = self.config.review_language
        logger.info(f"Verifying {len(candidates)} bug candidate(s)")

        for candidate in candidates:
            await self._session(bug_verification_prompt(candidate, language), max_steps)

        if not candidates and looks_like_bug_narrative(review_text):
            logger.info("No bug candidates extracted; running one broad extraction session")
            await self._session(bug_extraction_prompt(review_text, language), max_steps)

        if self.cards_recorded() > 0:
            return []
        if candidates:
            logger.warning(f"No bug cards recorded; synthesizing {len(candidates)} UNVERIFIED card(s)")
        return [synthesize_card(c) for c in candidates]
