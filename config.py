"""
Configuration module for Bedrock Review.
Handles all environment variables, model specifications, and review policy settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Sub-agent workers never exceed this, whatever SUBAGENT_CONCURRENCY says.
MAX_SUBAGENT_CONCURRENCY = 4


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    # provider:model-id, e.g. bedrock:us.anthropic.claude-sonnet-4-5-20250929-v1:0 or openai:gpt-4o
    model_string: str = os.getenv("REVIEW_MODEL", "bedrock:us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    throughput_mode: str = os.getenv("THROUGHPUT_MODE", "cross-region")

    # Extended thinking settings
    enable_thinking: bool = os.getenv("ENABLE_THINKING", "false").lower() == "true"
    thinking_budget: int = int(os.getenv("THINKING_BUDGET", "8000"))

    # OpenAI-compatible endpoints
    openai_api_base: str = os.getenv("OPENAI_API_BASE", "https://api.openai.com/v1")
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    request_timeout: float = float(os.getenv("MODEL_REQUEST_TIMEOUT", "300"))


@dataclass
class ReviewConfig:
    """Review loop, sub-agent and sandbox policy"""
    max_steps: int = int(os.getenv("REVIEW_MAX_STEPS", "25"))
    # Whole-attempt budget of the review loop
    max_retries: int = int(os.getenv("LLM_MAX_RETRIES", "6"))
    # Per model call inside one attempt
    model_call_max_retries: int = int(os.getenv("LLM_CALL_MAX_RETRIES", "6"))
    step_delay_ms: int = int(os.getenv("LLM_STEP_DELAY_MS", "0"))
    retry_max_delay_ms: int = int(os.getenv("LLM_RETRY_MAX_DELAY_MS", "20000"))

    # Sandbox
    sandbox_loop_threshold: int = int(os.getenv("SANDBOX_LOOP_THRESHOLD", "4"))
    sandbox_timeout_ms: int = int(os.getenv("SANDBOX_TIMEOUT_MS", "10000"))
    sandbox_approval_grace_ms: int = int(os.getenv("SANDBOX_APPROVAL_GRACE_MS", "30000"))
    sandbox_max_output_bytes: int = int(os.getenv("SANDBOX_MAX_OUTPUT_BYTES", str(1024 * 1024)))
    # YOLO mode: approve every sandbox command without asking
    sandbox_auto_approve: bool = os.getenv("SANDBOX_AUTO_APPROVE", "false").lower() == "true"

    # Sub-agents
    preflight_enabled: bool = os.getenv("PREFLIGHT_ENABLED", "true").lower() == "true"
    subagent_concurrency: int = int(os.getenv("SUBAGENT_CONCURRENCY", "4"))
    subagent_max_steps: int = int(os.getenv("SUBAGENT_MAX_STEPS", "15"))

    # Bug verification pass
    bug_verify_enabled: bool = os.getenv("BUG_VERIFY_ENABLED", "true").lower() == "true"
    bug_verify_max_steps: int = int(os.getenv("BUG_VERIFY_MAX_STEPS", "6"))
    bug_candidates_max: int = int(os.getenv("BUG_CANDIDATES_MAX", "5"))

    # Recovery summary
    recovery_file_chars: int = int(os.getenv("RECOVERY_FILE_CHARS", "60000"))

    review_language: str = os.getenv("REVIEW_LANGUAGE", "English")

    def effective_subagent_concurrency(self) -> int:
        return max(1, min(self.subagent_concurrency, MAX_SUBAGENT_CONCURRENCY))


@dataclass
class FetchConfig:
    """Retry policy of the HTTP fetch wrapper"""
    max_retries: int = int(os.getenv("FETCH_MAX_RETRIES", "5"))
    base_delay_ms: int = int(os.getenv("FETCH_BASE_DELAY_MS", "1000"))
    max_delay_ms: int = int(os.getenv("FETCH_MAX_DELAY_MS", "120000"))


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Bedrock Review"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug_mode: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    platform: str = os.getenv("PLATFORM", "local")
    heartbeat_interval: float = float(os.getenv("HEARTBEAT_INTERVAL", "15"))
    host: str = os.getenv("HOST", "127.0.0.1")
    port: int = int(os.getenv("PORT", "8765"))


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Only models with tool_use support are listed; the review loop needs it.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
    },
    {
        "id": "us.anthropic.claude-opus-4-1-20250805-v1:0",
        "base_id": "anthropic.claude-opus-4-1-20250805-v1:0",
        "name": "Claude Opus 4.1",
        "context_window": 200000,
        "max_output_tokens": 32000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 32000,
    },
    {
        "id": "anthropic.claude-3-5-sonnet-20241022-v2:0",
        "base_id": "anthropic.claude-3-5-sonnet-20241022-v2:0",
        "name": "Claude 3.5 Sonnet v2",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": False,
        "supports_thinking": False,
        "thinking_max_budget": 0,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
review_config = ReviewConfig()
fetch_config = FetchConfig()
app_config = AppConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model, with a permissive fallback for unknown IDs."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": model_id.startswith(("us.", "eu.", "ap.")),
        "supports_thinking": False,
        "thinking_max_budget": 0,
    }


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def supports_thinking(model_id: str) -> bool:
    """Check if model supports extended thinking"""
    return get_model_config(model_id).get("supports_thinking", False)


def get_thinking_max_budget(model_id: str) -> int:
    return get_model_config(model_id).get("thinking_max_budget", 0)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
