"""OpenAI-compatible chat-completions adapter.

Conversations stay in the Anthropic messages shape everywhere else; this
module translates them to chat-completions on the way out and parses the
reply back into ``GenerationResult`` on the way in.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from config import model_config

from .base import GenerationConfig, GenerationResult, ModelError, ModelService, ToolUseBlock
from .fetch_retry import ORIGINAL_STATUS_HEADER, RetryingFetcher

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


def _block_text(blocks: List[Dict[str, Any]]) -> str:
    return "".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _block_text(content)
    return json.dumps(content, ensure_ascii=False)


def to_chat_messages(messages: List[Dict[str, Any]], system_prompt: Optional[str]) -> List[Dict[str, Any]]:
    """Translate Anthropic-shaped history into chat-completions messages."""
    out: List[Dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if isinstance(content, str):
            out.append({"role": role, "content": content})
            continue
        blocks = content or []
        if role == "assistant":
            entry: Dict[str, Any] = {"role": "assistant", "content": _block_text(blocks) or None}
            calls = [
                {
                    "id": b.get("id", ""),
                    "type": "function",
                    "function": {
                        "name": b.get("name", ""),
                        "arguments": json.dumps(b.get("input", {}), ensure_ascii=False),
                    },
                }
                for b in blocks if isinstance(b, dict) and b.get("type") == "tool_use"
            ]
            if calls:
                entry["tool_calls"] = calls
            out.append(entry)
            continue
        text_parts = []
        for b in blocks:
            if not isinstance(b, dict):
                continue
            if b.get("type") == "tool_result":
                out.append({
                    "role": "tool",
                    "tool_call_id": b.get("tool_use_id", ""),
                    "content": _tool_result_text(b.get("content", "")),
                })
            elif b.get("type") == "text":
                text_parts.append(b.get("text", ""))
        if text_parts:
            out.append({"role": role, "content": "\n".join(text_parts)})
    return out


def to_chat_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for t in tools
    ]


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {"input": raw}
    return parsed if isinstance(parsed, dict) else {"input": parsed}


class OpenAICompatibleService(ModelService):
    """Chat-completions client for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        model_id: str,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        fetcher: Optional[RetryingFetcher] = None,
    ):
        self.model_id = model_id
        self.api_base = (api_base or model_config.openai_api_base).rstrip("/")
        self.api_key = api_key if api_key is not None else model_config.openai_api_key
        self.fetcher = fetcher or RetryingFetcher()
        logger.info(f"OpenAICompatibleService initialized with model: {self.model_id} ({self.api_base})")

    def _format_request_body(self, messages, system_prompt, model_id, config, tools) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model_id,
            "messages": to_chat_messages(messages, system_prompt),
            "max_tokens": config.max_tokens,
        }
        if config.temperature is not None:
            body["temperature"] = config.temperature
        if config.stop_sequences:
            body["stop"] = config.stop_sequences
        if tools:
            body["tools"] = to_chat_tools(tools)
            if config.tool_choice:
                body["tool_choice"] = {"type": "function", "function": {"name": config.tool_choice}}
        return body

    def _parse_response(self, payload: Dict[str, Any]) -> GenerationResult:
        result = GenerationResult()
        try:
            choice = payload["choices"][0]
            message = choice.get("message", {})
        except (KeyError, IndexError, TypeError) as e:
            raise ModelError(f"Failed to parse model response: {e}")

        text = message.get("content") or ""
        if text:
            result.content = text
            result.content_blocks.append({"type": "text", "text": text})
        for call in message.get("tool_calls") or []:
            function = call.get("function", {})
            block = ToolUseBlock(
                id=call.get("id", ""),
                name=function.get("name", ""),
                input=_parse_arguments(function.get("arguments")),
            )
            result.tool_uses.append(block)
            result.content_blocks.append({
                "type": "tool_use", "id": block.id, "name": block.name, "input": block.input,
            })

        finish = choice.get("finish_reason")
        result.stop_reason = _FINISH_REASONS.get(finish, finish)
        usage = payload.get("usage") or {}
        result.input_tokens = usage.get("prompt_tokens", 0)
        result.output_tokens = usage.get("completion_tokens", 0)
        return result

    def generate_response(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> GenerationResult:
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()
        body = self._format_request_body(messages, system_prompt, current_model, gen_config, tools)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        logger.info(f"Invoking model: {current_model}")
        try:
            response = self.fetcher.post(
                f"{self.api_base}/chat/completions",
                json=body,
                headers=headers,
                timeout=model_config.request_timeout,
            )
        except requests.RequestException as e:
            raise ModelError(f"Network error calling {self.api_base}: {e}")

        if response.status_code >= 400:
            original = response.headers.get(ORIGINAL_STATUS_HEADER)
            detail = response.text[:500]
            suffix = f" (original status {original})" if original else ""
            logger.error(f"Model API error: HTTP {response.status_code}{suffix}: {detail}")
            retry_after = response.headers.get("retry-after")
            try:
                retry_after_secs = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_secs = None
            raise ModelError(
                f"HTTP {response.status_code}{suffix}: {detail}",
                status_code=response.status_code,
                retry_after=retry_after_secs,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ModelError(f"Model returned invalid JSON: {e}")
        return self._parse_response(payload)
