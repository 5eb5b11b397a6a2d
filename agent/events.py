"""
Agent event and step record data types.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class AgentEvent:
    """Event emitted during a review (status, step, sandbox_run_output, complete, error, ...)"""
    type: str
    content: str = ""
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape: ``{"type": ..., "message"?: content, **data}``."""
        payload: Dict[str, Any] = {"type": self.type}
        if self.content:
            payload["message"] = self.content
        if self.data:
            payload.update(self.data)
        return payload


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(self.input_tokens + other.input_tokens, self.output_tokens + other.output_tokens)

    def to_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.input_tokens,
            "completionTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model, parsed once at the adapter boundary"""
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"toolCallId": self.id, "toolName": self.name, "args": self.args}


@dataclass(frozen=True)
class ToolCallResult:
    """Outcome of one ToolCall, as fed back to the model"""
    id: str
    name: str
    args: Dict[str, Any]
    result: str
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"toolCallId": self.id, "toolName": self.name, "args": self.args, "result": self.result}


@dataclass(frozen=True)
class StepEvent:
    """One generation round. Never mutated after it is handed to observers."""
    index: int
    text: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_results: Tuple[ToolCallResult, ...] = ()
    usage: Usage = Usage()
    finish_reason: str = "stop"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "text": self.text,
            "toolCalls": [c.to_dict() for c in self.tool_calls],
            "toolResults": [r.to_dict() for r in self.tool_results],
            "usage": self.usage.to_dict(),
            "finishReason": self.finish_reason,
        }


@dataclass
class FinalResult:
    """Everything a finished driver run produced"""
    text: str
    tool_calls: List[ToolCall]
    tool_results: List[ToolCallResult]
    steps: List[StepEvent]
    finish_reason: str
    usage: Usage = Usage()


class AgentCancelled(Exception):
    """A driver run was cancelled; ``steps`` holds the history recorded so far."""

    def __init__(self, steps: List[StepEvent], message: str = "Agent run cancelled"):
        super().__init__(message)
        self.steps = list(steps)


class ClientDisconnected(Exception):
    """The streaming client went away; unwind instead of doing unobserved work."""
