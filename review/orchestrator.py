"""
Review orchestrator: the top-level attempt loop of one review.

Attempting -> Submitted | Retrying | Exhausted. Submission is detected only
through the submit_summary callback. Transient model failures back off and
retry; billing failures abort. A session stuck re-running the same sandbox
command is cancelled and replaced by a recovery summary, as is a final text
that only describes waiting for approval.
"""

import asyncio
import functools
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from agent.events import AgentCancelled, AgentEvent, FinalResult, StepEvent, Usage
from agent.report import truncate_text
from agent.retry import backoff_delay_ms, is_billing_error, is_transient_error, parse_retry_after
from agent.steps import StepDriver
from agent.subagent import SubAgentCache, SubAgentOrchestrator
from backend import Backend, LocalBackend
from changes import ChangedFile
from config import ReviewConfig, review_config
from llm.base import GenerationConfig, ModelService
from providers import PlatformProvider
from tools._common import ToolContext
from tools.catalog import build_review_registry
from tools.registry import ToolRegistry, is_tool_named
from tools.review_ops import SUBMIT_SUMMARY
from tools.sandbox import ConfirmCallback, SandboxExecutor, approve_all, deny_non_interactive

from .bug_pass import BugCard, BugVerifier
from .classifiers import is_meta_summary
from .prompts import (
    CONTINUE_INSTRUCTION,
    attempt_context,
    construct_prompt,
    preflight_goals,
    preflight_section,
    recovery_summary_prompt,
)

logger = logging.getLogger(__name__)

EmitCallback = Callable[[AgentEvent], Awaitable[None]]
SandboxSignature = Tuple[str, int, str]

SANDBOX_TOOL = "sandbox_exec"
REPORT_BUG_TOOL = "report_bug"
_EXECUTED_PREFIX = "Sandbox root:"
_ATTEMPT_RESULT_CHARS = 2000


class ReviewState(str, Enum):
    ATTEMPTING = "attempting"
    SUBMITTED = "submitted"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"


class ReviewAborted(Exception):
    """A non-retryable provider error (billing, quota) ended the review."""


@dataclass
class ReviewRunState:
    """Mutable state of exactly one review."""
    prompt: str
    usage: Usage = Usage()
    tool_usage: List[Dict[str, Any]] = field(default_factory=list)
    attempt: int = 0
    state: ReviewState = ReviewState.ATTEMPTING
    summary_submitted: bool = False
    submitted_summary: Optional[str] = None
    # Loop detection
    sandbox_signature_counts: Dict[SandboxSignature, int] = field(default_factory=dict)
    last_sandbox_signature: Optional[SandboxSignature] = None
    consecutive_sandbox_steps: int = 0
    loop_detected: bool = False
    # Evidence
    sandbox_evidence: Dict[str, str] = field(default_factory=dict)
    evidence_by_signature: Dict[SandboxSignature, str] = field(default_factory=dict)
    last_evidence: Optional[str] = None
    bug_cards: List[BugCard] = field(default_factory=list)


@dataclass
class ReviewOutcome:
    result: str
    state: ReviewState
    attempts: int
    bug_cards: List[BugCard]
    usage: Usage
    recovered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "state": self.state.value,
            "attempts": self.attempts,
            "bugs": [card.to_dict() for card in self.bug_cards],
            "usage": self.usage.to_dict(),
            "recovered": self.recovered,
        }


async def _no_emit(event: AgentEvent) -> None:
    return None


def sandbox_signature(args: Dict[str, Any], default_timeout_ms: int) -> SandboxSignature:
    try:
        timeout = int(args.get("timeout") or default_timeout_ms)
    except (TypeError, ValueError):
        timeout = default_timeout_ms
    return (
        str(args.get("cwd") or ".").strip() or ".",
        timeout,
        str(args.get("command") or "").strip(),
    )


def track_sandbox_loop(state: ReviewRunState, step: StepEvent, default_timeout_ms: int) -> int:
    """Update loop counters for one step; returns the current run of identical sandbox-only steps."""
    calls = list(step.tool_calls)
    signatures = {sandbox_signature(c.args, default_timeout_ms) for c in calls if is_tool_named(c.name, SANDBOX_TOOL)}
    sandbox_only = bool(calls) and all(is_tool_named(c.name, SANDBOX_TOOL) for c in calls)

    for signature in signatures:
        state.sandbox_signature_counts[signature] = state.sandbox_signature_counts.get(signature, 0) + 1

    if sandbox_only and len(signatures) == 1:
        signature = next(iter(signatures))
        if signature == state.last_sandbox_signature:
            state.consecutive_sandbox_steps += 1
        else:
            state.consecutive_sandbox_steps = 1
        state.last_sandbox_signature = signature
    else:
        state.consecutive_sandbox_steps = 0
        state.last_sandbox_signature = None
    return state.consecutive_sandbox_steps


class ReviewOrchestrator:
    """Runs one review of ``files`` end to end and returns its ReviewOutcome."""

    def __init__(
        self,
        service: ModelService,
        provider: PlatformProvider,
        files: Sequence[ChangedFile],
        *,
        working_directory: str = ".",
        config: Optional[ReviewConfig] = None,
        generation: Optional[GenerationConfig] = None,
        emit: Optional[EmitCallback] = None,
        confirm: Optional[ConfirmCallback] = None,
        backend: Optional[Backend] = None,
        cache: Optional[SubAgentCache] = None,
        custom_instructions: Optional[str] = None,
    ):
        self.service = service
        self.provider = provider
        self.files = list(files)
        self.config = config or review_config
        self.generation = generation or GenerationConfig()
        self.emit = emit or _no_emit
        self.backend = backend or LocalBackend(working_directory)
        self.working_directory = self.backend.working_directory
        self.custom_instructions = custom_instructions

        if self.config.sandbox_auto_approve:
            confirm = approve_all
        self.sandbox = SandboxExecutor(
            self.working_directory,
            confirm=confirm or deny_non_interactive,
            on_event=self.emit,
            default_timeout_ms=self.config.sandbox_timeout_ms,
            max_output_bytes=self.config.sandbox_max_output_bytes,
        )
        self.context = ToolContext(
            working_directory=self.working_directory,
            backend=self.backend,
            platform=provider.get_platform_option().value,
            emit=self.emit,
            provider=provider,
        )
        self.base_tools = build_review_registry(self.sandbox)
        self.subagents = SubAgentOrchestrator(
            service, self.base_tools, self.context,
            max_steps=self.config.subagent_max_steps,
            config=self.generation,
            step_delay_ms=self.config.step_delay_ms,
            model_call_max_retries=self.config.model_call_max_retries,
            retry_max_delay_ms=self.config.retry_max_delay_ms,
            concurrency=self.config.effective_subagent_concurrency(),
            cache=cache,
        )
        self.tools: ToolRegistry = self.base_tools.with_tools(SUBMIT_SUMMARY, self.subagents.as_tool())

    async def _status(self, message: str) -> None:
        await self.emit(AgentEvent(type="status", content=message))

    # ------------------------------------------------------------------
    # Step observation
    # ------------------------------------------------------------------

    async def _observe_step(self, state: ReviewRunState, phase: str,
                            cancel_event: Optional[asyncio.Event], step: StepEvent) -> None:
        state.usage = state.usage + step.usage
        failed = {r.id for r in step.tool_results if r.is_error}
        for call in step.tool_calls:
            state.tool_usage.append({
                "toolName": call.name, "args": call.args, "attempt": state.attempt, "phase": phase,
            })
            if is_tool_named(call.name, REPORT_BUG_TOOL) and call.id not in failed:
                state.bug_cards.append(BugCard.from_args(call.args, call.id))
            if phase == "review" and is_tool_named(call.name, SUBMIT_SUMMARY.name):
                report = str(call.args.get("report") or "").strip()
                if report:
                    state.submitted_summary = report

        for result in step.tool_results:
            if not is_tool_named(result.name, SANDBOX_TOOL):
                continue
            state.sandbox_evidence[result.id] = result.result
            if result.result.startswith(_EXECUTED_PREFIX):
                signature = sandbox_signature(result.args, self.config.sandbox_timeout_ms)
                state.evidence_by_signature[signature] = result.result
                state.last_evidence = result.result

        await self.emit(AgentEvent(type="step", data={"step": step.to_dict(), "phase": phase}))

        if phase != "review" or cancel_event is None:
            return
        run = track_sandbox_loop(state, step, self.config.sandbox_timeout_ms)
        if run >= self.config.sandbox_loop_threshold and not state.loop_detected:
            state.loop_detected = True
            logger.warning(
                f"Sandbox loop detected: {run} consecutive steps of {state.last_sandbox_signature[2]!r}; "
                "switching to recovery summary"
            )
            await self._status("Repeated sandbox command detected; writing a recovery summary...")
            cancel_event.set()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _preflight(self, state: ReviewRunState) -> None:
        goals = preflight_goals(self.files)
        await self.emit(AgentEvent(type="subagent_preflight", data={"state": "start", "total": len(goals)}))
        reports = await self.subagents.run_many(goals)
        await self.emit(AgentEvent(type="subagent_preflight", data={"state": "end", "total": len(reports)}))
        state.prompt += preflight_section(reports)

    def _driver(self, registry: ToolRegistry, max_steps: int, artifact_tool: Optional[str]) -> StepDriver:
        return StepDriver(
            self.service, registry, self.context,
            max_steps=max_steps,
            config=self.generation,
            step_delay_ms=self.config.step_delay_ms,
            model_call_max_retries=self.config.model_call_max_retries,
            retry_max_delay_ms=self.config.retry_max_delay_ms,
            artifact_tool=artifact_tool,
        )

    async def _recovery_summary(self, state: ReviewRunState) -> str:
        """One tool-less model call over sandbox evidence and the changed files."""
        evidence = None
        if state.last_sandbox_signature is not None:
            evidence = state.evidence_by_signature.get(state.last_sandbox_signature)
        evidence = evidence or state.last_evidence or ""
        prompt = recovery_summary_prompt(
            self.files, evidence, self.config.review_language, self.config.recovery_file_chars,
        )
        result = await self._driver(ToolRegistry(), 1, None).run(
            prompt, on_step=functools.partial(self._observe_step, state, "recovery", None),
        )
        summary = result.text.strip()
        if not summary:
            summary = "Review could not be completed automatically."
            if evidence:
                summary += f"\n\nLast sandbox evidence:\n{truncate_text(evidence, 4000)}"
        self.provider.post_review_comment(summary)
        return summary

    async def _bug_pass(self, state: ReviewRunState, text: str) -> None:
        verifier = BugVerifier(
            self.service, self.context, self.sandbox,
            record_step=functools.partial(self._observe_step, state, "bug_verification", None),
            cards_recorded=lambda: len(state.bug_cards),
            config=self.config,
            generation=self.generation,
        )
        state.bug_cards.extend(await verifier.run(text))

    def _attempt_context(self, attempt: int, final: FinalResult) -> str:
        lines = [
            f"Tool Result ({r.name}): "
            f"{truncate_text(json.dumps(r.result, ensure_ascii=False), _ATTEMPT_RESULT_CHARS)}"
            for r in final.tool_results
        ]
        return attempt_context(attempt, lines, final.text)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self, prompt: Optional[str] = None) -> ReviewOutcome:
        """Run the review. Raises ReviewAborted on billing errors; other failures propagate."""
        initial_prompt = prompt or construct_prompt(
            self.files, self.config.review_language, self.working_directory, self.custom_instructions,
        )
        state = ReviewRunState(prompt=initial_prompt)

        if self.config.preflight_enabled and self.files:
            await self._status("Running preflight analysis...")
            await self._preflight(state)
            initial_prompt = state.prompt

        max_attempts = max(1, self.config.max_retries)
        accumulated = ""
        final: Optional[FinalResult] = None

        for attempt in range(1, max_attempts + 1):
            state.attempt = attempt
            state.state = ReviewState.ATTEMPTING
            state.summary_submitted = False
            logger.info(f"Review attempt {attempt}/{max_attempts}")
            await self._status(f"Agent started (attempt {attempt}/{max_attempts})...")

            def mark_submitted() -> None:
                state.summary_submitted = True

            cancel_event = asyncio.Event()
            driver = self._driver(self.tools, self.config.max_steps, SUBMIT_SUMMARY.name)
            try:
                final = await driver.run(
                    state.prompt,
                    on_artifact_submitted=mark_submitted,
                    on_step=functools.partial(self._observe_step, state, "review", cancel_event),
                    cancel_event=cancel_event,
                )
            except AgentCancelled as e:
                if not state.loop_detected:
                    raise
                logger.info(f"Attempt {attempt} cancelled after {len(e.steps)} step(s)")
                state.state = ReviewState.EXHAUSTED
                summary = await self._recovery_summary(state)
                return await self._finish(state, summary, recovered=True)
            except Exception as e:
                if is_billing_error(e):
                    logger.error(f"Non-retryable provider error: {e}")
                    raise ReviewAborted(str(e)) from e
                if attempt < max_attempts and is_transient_error(e):
                    state.state = ReviewState.RETRYING
                    delay = backoff_delay_ms(attempt, parse_retry_after(e), self.config.retry_max_delay_ms)
                    logger.warning(f"Attempt {attempt} failed ({e}); retrying in {delay:.0f}ms")
                    await self._status(f"Model call failed, retrying in {delay / 1000:.1f}s...")
                    await asyncio.sleep(delay / 1000)
                    continue
                logger.error(f"Review attempt {attempt} failed and will not be retried: {e}")
                raise

            if state.summary_submitted:
                state.state = ReviewState.SUBMITTED
                logger.info(f"Summary submitted on attempt {attempt}")
                break

            logger.warning(f"Agent did not submit a summary on attempt {attempt}")
            if attempt < max_attempts:
                state.state = ReviewState.RETRYING
                accumulated += self._attempt_context(attempt, final)
                state.prompt = f"{initial_prompt}{accumulated}{CONTINUE_INSTRUCTION}"
        else:
            state.state = ReviewState.EXHAUSTED
            logger.error(f"Agent failed to submit a summary after {max_attempts} attempt(s)")

        text = state.submitted_summary if state.summary_submitted and state.submitted_summary else ""
        if not text and final is not None:
            text = final.text.strip()
        if is_meta_summary(text):
            logger.warning("Final review text is not actionable; writing a recovery summary")
            text = await self._recovery_summary(state)
            return await self._finish(state, text, recovered=True)
        return await self._finish(state, text)

    async def _finish(self, state: ReviewRunState, text: str, recovered: bool = False) -> ReviewOutcome:
        if self.config.bug_verify_enabled:
            await self._bug_pass(state, text)
        if state.state == ReviewState.SUBMITTED:
            self.provider.submit_usage(state.usage.to_dict(), state.tool_usage)
        return ReviewOutcome(
            result=text,
            state=state.state,
            attempts=state.attempt,
            bug_cards=list(state.bug_cards),
            usage=state.usage,
            recovered=recovered,
        )
