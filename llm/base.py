"""Provider-agnostic request and response types for model calls."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class ModelError(Exception):
    """Raised by model adapters for any failed generation request.

    ``status_code`` and ``retry_after`` (seconds) are filled in when the
    provider reported them, so callers can classify without string parsing.
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 16000
    temperature: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    throughput_mode: str = "cross-region"

    enable_thinking: bool = False
    thinking_budget: int = 8000

    # Force the model to call this tool (by name) instead of answering freely
    tool_choice: Optional[str] = None


@dataclass
class ToolUseBlock:
    """A tool call requested by the model, arguments already parsed"""
    id: str = ""
    name: str = ""
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Result from a generation request"""
    content: str = ""
    tool_uses: List[ToolUseBlock] = field(default_factory=list)
    # Anthropic-format assistant content (text and tool_use blocks), replayed into history
    content_blocks: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


class ModelService(ABC):
    """A blocking model client. Conversations use the Anthropic messages shape.

    Messages are ``{"role": "user"|"assistant", "content": str | [blocks]}``
    with ``text``, ``tool_use`` and ``tool_result`` blocks; tools are
    ``{"name", "description", "input_schema"}`` dicts. Adapters translate
    both at their own boundary.
    """

    model_id: str = ""

    @abstractmethod
    def generate_response(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> GenerationResult:
        """Run one generation round and return its text and tool calls."""
