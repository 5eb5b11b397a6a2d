"""
Agent package - the tool-using model session and its helpers.

- events: AgentEvent, StepEvent, ToolCall/ToolCallResult, Usage, cancellation signals
- retry: model error classification and backoff
- steps: StepDriver, the multi-step generate/dispatch loop
- report: sub-agent report extraction, quality checks and condensing
- subagent: sub-agent spawning, caching and the bounded worker pool

Only the event types are imported eagerly; ``tools.dispatch`` depends on them.
"""

from .events import (  # noqa: F401
    AgentCancelled,
    AgentEvent,
    ClientDisconnected,
    FinalResult,
    StepEvent,
    ToolCall,
    ToolCallResult,
    Usage,
)
