"""
Model layer - provider adapters behind one ModelService interface.

- base: request/response dataclasses, ModelError and the ModelService ABC
- bedrock: Amazon Bedrock (Anthropic messages over invoke_model)
- openai_compat: OpenAI-compatible chat completions over requests
- fetch_retry: retrying HTTP wrapper shared by HTTP-based adapters and the fetch tool
- factory: picks an adapter from a "provider:model" string
"""

from .base import (  # noqa: F401
    GenerationConfig,
    GenerationResult,
    ModelError,
    ModelService,
    ToolUseBlock,
)
from .factory import create_model_service, default_generation_config, parse_model_string  # noqa: F401
