"""
Amazon Bedrock service module.
Handles review-model calls against the Bedrock runtime (Anthropic messages API).
"""

import json
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from config import (
    aws_config,
    model_config,
    get_model_config,
    get_max_output_tokens,
    requires_inference_profile,
    supports_thinking,
    get_thinking_max_budget,
)

from .base import GenerationConfig, GenerationResult, ModelError, ModelService, ToolUseBlock

logger = logging.getLogger(__name__)

# Bedrock error codes that map onto HTTP-style statuses for retry classification
_ERROR_STATUS = {
    "ThrottlingException": 429,
    "TooManyRequestsException": 429,
    "ServiceQuotaExceededException": 429,
    "ModelTimeoutException": 408,
    "ServiceUnavailableException": 503,
    "InternalServerException": 500,
    "ModelNotReadyException": 503,
}


class BedrockService(ModelService):
    """Blocking Bedrock client used by the review loop."""

    def __init__(
        self,
        model_id: str,
        region: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.model_id = model_id
        self.region = region or aws_config.region
        self.client = client or self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            # Retries are owned by the review loop; keep botocore's own to a minimum.
            return session.client(
                "bedrock-runtime",
                config=BotoConfig(
                    read_timeout=model_config.request_timeout,
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
        except NoCredentialsError:
            raise ModelError("AWS credentials not configured.")
        except Exception as e:
            raise ModelError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Get the appropriate model identifier based on throughput mode"""
        if config.throughput_mode == "cross-region":
            if model_id.startswith(("us.", "eu.", "ap.")):
                return model_id
            elif requires_inference_profile(model_id):
                region_prefix = "eu" if self.region.startswith("eu-") else "us"
                return f"{region_prefix}.{model_id}"
        return get_model_config(model_id).get("base_id", model_id)

    def _format_request_body(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None,
    ) -> Dict[str, Any]:
        """Format request body for Anthropic Claude models with tool_use"""
        formatted_messages = []
        for msg in messages:
            if msg["role"] == "system":
                continue
            content = msg.get("content")
            if isinstance(content, str) and not content.strip():
                content = "(no content)"
            elif isinstance(content, list) and not content:
                content = [{"type": "text", "text": "(no content)"}]
            formatted_messages.append({"role": msg["role"], "content": content})

        effective_max_tokens = min(config.max_tokens, get_max_output_tokens(model_id))
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": effective_max_tokens,
            "messages": formatted_messages,
        }

        # Forced tool calls and extended thinking cannot be combined.
        use_thinking = supports_thinking(model_id) and config.enable_thinking and not config.tool_choice
        if use_thinking:
            thinking_budget = min(config.thinking_budget, get_thinking_max_budget(model_id))
            max_allowed = effective_max_tokens - 4000
            if thinking_budget > max_allowed:
                thinking_budget = max(max_allowed, 1000)
            body["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget}
        else:
            body["temperature"] = config.temperature if config.temperature is not None else 1.0

        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = tools
            if config.tool_choice:
                body["tool_choice"] = {"type": "tool", "name": config.tool_choice}

        logger.debug(f"Request body keys: {list(body.keys())}, thinking: {use_thinking}")
        return body

    def _parse_response(self, response_body: Dict) -> GenerationResult:
        """Parse the Anthropic response body into text and tool_use blocks"""
        result = GenerationResult()
        try:
            for block in response_body.get("content", []):
                block_type = block.get("type", "")
                if block_type == "text":
                    result.content += block.get("text", "")
                    result.content_blocks.append(block)
                elif block_type == "tool_use":
                    tool_input = block.get("input", {})
                    if isinstance(tool_input, str):
                        try:
                            tool_input = json.loads(tool_input)
                        except json.JSONDecodeError:
                            tool_input = {"input": tool_input}
                    result.tool_uses.append(ToolUseBlock(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        input=tool_input if isinstance(tool_input, dict) else {},
                    ))
                    result.content_blocks.append(block)

            usage = response_body.get("usage", {})
            result.input_tokens = usage.get("input_tokens", 0)
            result.output_tokens = usage.get("output_tokens", 0)
            result.stop_reason = response_body.get("stop_reason")
        except (KeyError, IndexError, AttributeError) as e:
            logger.error(f"Error parsing response: {e}")
            raise ModelError(f"Failed to parse model response: {e}")
        return result

    def generate_response(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None,
    ) -> GenerationResult:
        """
        Generate a response using Amazon Bedrock.
        Returns a GenerationResult with content and optional tool_use blocks.
        """
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()

        try:
            model_identifier = self._get_model_identifier(current_model, gen_config)
            request_body = self._format_request_body(
                messages, system_prompt, current_model, gen_config, tools=tools
            )
            logger.info(f"Invoking model: {model_identifier}")

            response = self.client.invoke_model(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json",
            )
            response_body = json.loads(response["body"].read())
            return self._parse_response(response_body)

        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            error_message = e.response.get("Error", {}).get("Message", str(e))
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            logger.error(f"Bedrock API error: {error_code} - {error_message}")

            if error_code in ["ExpiredTokenException", "InvalidSignatureException"]:
                raise ModelError("AWS credentials expired. Please refresh.", status_code=403)

            raise ModelError(
                f"Bedrock API error ({error_code}): {error_message}",
                status_code=_ERROR_STATUS.get(error_code, status),
            )
        except BotoCoreError as e:
            # Connection and read timeouts surface here rather than as ClientError.
            logger.error(f"Bedrock transport error: {e}")
            raise ModelError(f"Bedrock network error: {e}")
