"""Build a ModelService from a ``provider:model-id`` string."""

import logging
from typing import Optional, Tuple

from config import model_config

from .base import GenerationConfig, ModelError, ModelService

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("bedrock", "openai")


def parse_model_string(model_string: str) -> Tuple[str, str]:
    """Split ``provider:model``. Bedrock ids contain colons, so only the first one counts.

    A string without a known provider prefix is treated as a Bedrock model id.
    """
    model_string = (model_string or "").strip()
    if not model_string:
        raise ModelError("No model configured. Set REVIEW_MODEL, e.g. bedrock:<model-id>.")
    provider, sep, model_id = model_string.partition(":")
    if sep and provider.lower() in SUPPORTED_PROVIDERS and model_id:
        return provider.lower(), model_id
    return "bedrock", model_string


def create_model_service(model_string: Optional[str] = None) -> ModelService:
    provider, model_id = parse_model_string(model_string or model_config.model_string)
    logger.info(f"Using {provider} model {model_id}")
    if provider == "openai":
        from .openai_compat import OpenAICompatibleService
        return OpenAICompatibleService(model_id)
    from .bedrock import BedrockService
    return BedrockService(model_id)


def default_generation_config() -> GenerationConfig:
    """GenerationConfig from the MAX_TOKENS / TEMPERATURE / thinking settings."""
    return GenerationConfig(
        max_tokens=model_config.max_tokens,
        temperature=model_config.temperature,
        throughput_mode=model_config.throughput_mode,
        enable_thinking=model_config.enable_thinking,
        thinking_budget=model_config.thinking_budget,
    )
