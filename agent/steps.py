"""
Multi-step tool-use driver.

One driver run is one model conversation: generate, dispatch the requested
tools, feed the results back, repeat until the model stops asking for tools
or the step budget runs out. ``on_step`` is awaited after every round before
the next model call, so a slow observer (e.g. one waiting on a human sandbox
approval) holds the whole session.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from llm.base import GenerationConfig, GenerationResult, ModelService
from tools._common import ToolContext
from tools.dispatch import execute_tool
from tools.registry import ToolRegistry, is_tool_named

from .events import AgentCancelled, FinalResult, StepEvent, ToolCall, ToolCallResult, Usage
from .retry import call_backoff_ms, is_transient_error, parse_retry_after

logger = logging.getLogger(__name__)

StepCallback = Callable[[StepEvent], Awaitable[None]]

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


def _finish_reason(result: GenerationResult) -> str:
    if result.tool_uses:
        return "tool_calls"
    return _STOP_REASONS.get(result.stop_reason or "end_turn", result.stop_reason or "stop")


class StepDriver:
    """Runs one tool-using model session. Not reusable across runs."""

    def __init__(
        self,
        service: ModelService,
        registry: ToolRegistry,
        context: ToolContext,
        *,
        max_steps: int,
        system_prompt: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        step_delay_ms: int = 0,
        model_call_max_retries: int = 0,
        retry_max_delay_ms: int = 20000,
        artifact_tool: Optional[str] = None,
    ):
        self.service = service
        self.registry = registry
        self.context = context
        self.max_steps = max(1, max_steps)
        self.system_prompt = system_prompt
        self.config = config or GenerationConfig()
        self.step_delay_ms = step_delay_ms
        self.model_call_max_retries = model_call_max_retries
        self.retry_max_delay_ms = retry_max_delay_ms
        self.artifact_tool = artifact_tool
        # Readable after cancellation or failure
        self.steps: List[StepEvent] = []
        self.usage = Usage()

    async def _wait(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        """Sleep, waking early (and raising) when the run is cancelled."""
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise AgentCancelled(self.steps)

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise AgentCancelled(self.steps)

    async def _generate_once(self, messages: List[Dict[str, Any]],
                             cancel_event: Optional[asyncio.Event]) -> GenerationResult:
        call = asyncio.ensure_future(asyncio.to_thread(
            self.service.generate_response,
            list(messages),
            self.system_prompt,
            None,
            self.config,
            self.registry.definitions() or None,
        ))
        if cancel_event is None:
            return await call
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            waiter.cancel()
        if call in done:
            return call.result()
        # The worker thread cannot be interrupted; its result is discarded.
        call.cancel()
        raise AgentCancelled(self.steps)

    async def _generate(self, messages: List[Dict[str, Any]],
                        cancel_event: Optional[asyncio.Event]) -> GenerationResult:
        attempt = 0
        while True:
            self._check_cancelled(cancel_event)
            try:
                return await self._generate_once(messages, cancel_event)
            except AgentCancelled:
                raise
            except Exception as e:
                attempt += 1
                if attempt > self.model_call_max_retries or not is_transient_error(e):
                    raise
                delay = call_backoff_ms(attempt, parse_retry_after(e), self.retry_max_delay_ms)
                logger.warning(
                    f"Model call failed (retry {attempt}/{self.model_call_max_retries} in {delay:.0f}ms): {e}"
                )
                await self._wait(delay / 1000, cancel_event)

    async def _dispatch(self, calls: List[ToolCall]) -> List[ToolCallResult]:
        results = []
        for call in calls:
            outcome = await execute_tool(self.registry, call.name, call.args, self.context, tool_call_id=call.id)
            results.append(ToolCallResult(
                id=call.id, name=call.name, args=call.args,
                result=outcome.text, is_error=not outcome.success,
            ))
        return results

    async def run(
        self,
        prompt: str,
        on_artifact_submitted: Optional[Callable[[], Any]] = None,
        on_step: Optional[StepCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FinalResult:
        """Drive the conversation. Raises AgentCancelled (with partial steps) when cancelled."""
        messages: List[Dict[str, Any]] = [{"role": "user", "content": prompt}]
        artifact_fired = False
        finish_reason = "stop"
        last_text = ""

        for index in range(self.max_steps):
            if index > 0 and self.step_delay_ms > 0:
                await self._wait(self.step_delay_ms / 1000, cancel_event)
            self._check_cancelled(cancel_event)

            result = await self._generate(messages, cancel_event)
            step_usage = Usage(result.input_tokens, result.output_tokens)
            self.usage = self.usage + step_usage
            calls = [ToolCall(id=t.id or f"call_{index}_{i}", name=t.name, args=dict(t.input or {}))
                     for i, t in enumerate(result.tool_uses)]

            assistant_blocks = list(result.content_blocks)
            if not assistant_blocks and result.content:
                assistant_blocks = [{"type": "text", "text": result.content}]
            # Ids may have been synthesized above; keep history consistent with them.
            tool_blocks = [b for b in assistant_blocks if b.get("type") == "tool_use"]
            for block, call in zip(tool_blocks, calls):
                block["id"] = call.id
            messages.append({"role": "assistant", "content": assistant_blocks or result.content})

            tool_results = await self._dispatch(calls) if calls else []
            if tool_results:
                messages.append({
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": r.id,
                            "content": r.result,
                            **({"is_error": True} if r.is_error else {}),
                        }
                        for r in tool_results
                    ],
                })

            finish_reason = _finish_reason(result)
            last_text = result.content
            step = StepEvent(
                index=index,
                text=result.content,
                tool_calls=tuple(calls),
                tool_results=tuple(tool_results),
                usage=step_usage,
                finish_reason=finish_reason,
            )
            self.steps.append(step)

            if (self.artifact_tool and on_artifact_submitted and not artifact_fired
                    and any(is_tool_named(c.name, self.artifact_tool) for c in calls)):
                artifact_fired = True
                on_artifact_submitted()

            if on_step is not None:
                await on_step(step)

            if not calls:
                break
            self._check_cancelled(cancel_event)

        return FinalResult(
            text=last_text,
            tool_calls=[c for s in self.steps for c in s.tool_calls],
            tool_results=[r for s in self.steps for r in s.tool_results],
            steps=list(self.steps),
            finish_reason=finish_reason,
            usage=self.usage,
        )


async def run_agent(
    prompt: str,
    service: ModelService,
    max_steps: int,
    tools: ToolRegistry,
    context: ToolContext,
    on_artifact_submitted: Optional[Callable[[], Any]] = None,
    on_step: Optional[StepCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    **options: Any,
) -> FinalResult:
    """One-shot convenience wrapper around StepDriver."""
    driver = StepDriver(service, tools, context, max_steps=max_steps, **options)
    return await driver.run(prompt, on_artifact_submitted, on_step, cancel_event)
